"""
Core utilities and configuration for the pipeline execution backend.

This package provides foundational components used throughout the service:

Modules:
    config: Application configuration and environment variable management
    database: Database engine, session factory and session helpers
    exceptions: Custom exception hierarchy and retry classification
    logging: Logging configuration and utilities
    security: Secret redaction and bearer token verification

Usage:
    from core.config import settings
    from core.database import session_scope
    from core.exceptions import ConfigurationError, is_retryable
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with session_scope() as session:
        # Perform database operations
        pass
"""
