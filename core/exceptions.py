"""
Custom exceptions for the pipeline backend with structured error context.

This module provides the exception hierarchy used by connectors, the
pipeline worker, the job queue and the alert evaluator. Each exception
carries context information for debugging and monitoring.

Exception Hierarchy:
    ETLException (base)
    ├── ConfigurationError
    ├── ResourceNotFoundError
    ├── PipelineBusyError
    ├── ConnectorError
    │   ├── SourceConnectionError
    │   ├── AuthenticationError
    │   ├── RateLimitError
    │   └── QueryExecutionError
    ├── ExtractionError
    ├── TransformationError
    │   └── DataFormatError
    ├── QualityGateFailure
    ├── LoadError
    │   └── UpsertError
    ├── TransientJobError
    ├── AlertEvaluationError
    └── RetryableError / NonRetryableError (mixins)

Retry policy:
    The job queue consults ``is_retryable()``. Anything derived from
    ``NonRetryableError`` is terminal on the first attempt; everything
    else (including unknown exceptions) is retried with backoff.
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all pipeline-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (pipeline, source, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Temporary database connection issues
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid pipeline or connector configuration
    - Quality gate failures
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Configuration / lookup errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Invalid connector or pipeline configuration, detected before any I/O.

    Context should include:
        - errors: List of validation messages
        - source_type: Connector type tag (if applicable)
    """
    pass


class ResourceNotFoundError(NonRetryableError):
    """Referenced pipeline, connection, query or remote resource does not exist."""
    pass


class PipelineBusyError(ETLException):
    """
    A run was requested while another run of the same pipeline holds the lease.

    Context should include:
        - pipeline_id: Pipeline that is busy
        - active_execution_id: Execution currently holding the lease
    """
    pass


# ============================================================================
# Connector Errors
# ============================================================================

class ConnectorError(ETLException):
    """Base exception for connector failures. Messages never carry credentials."""
    pass


class SourceConnectionError(RetryableError, ConnectorError):
    """Source unreachable: network errors, timeouts, server errors after retries."""
    pass


class RateLimitError(RetryableError, ConnectorError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, ConnectorError):
    """Authentication failures (HTTP 401, 403, bad DB credentials)."""
    pass


class QueryExecutionError(NonRetryableError, ConnectorError):
    """
    Query could not be executed: malformed SQL, unknown table/collection.

    Context should include:
        - source_type: Connector type tag
        - table: Target table or collection (if parsed)
    """
    pass


# ============================================================================
# Pipeline stage errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """
    A value could not be coerced and the step was configured fail-fast.

    Context should include:
        - step_index: Index of the failing transformation step
        - column: Column being transformed
        - row_index: Row that failed
    """
    pass


class QualityGateFailure(NonRetryableError):
    """
    Intentional abort: a FAIL-severity quality rule was violated.

    This is not a bug and retrying will not help.

    Context should include:
        - fail_count: Number of FAIL-severity violations
        - total_violations: Total violations (WARN + FAIL)
    """
    pass


class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class UpsertError(LoadError):
    """
    Exception raised when the batch upsert fails.

    Context should include:
        - pipeline_id: Pipeline being loaded
        - batch_id: Batch key
    """
    pass


class TransientJobError(RetryableError):
    """Any other extract/transform/load failure; eligible for queue retry."""
    pass


class AlertEvaluationError(ETLException):
    """
    Isolated per-alert failure. Recorded in alert history, never propagated.

    Context should include:
        - alert_id: Alert being evaluated
    """
    pass


def is_retryable(exc: BaseException) -> bool:
    """Whether the job queue should re-attempt after ``exc``."""
    return not isinstance(exc, NonRetryableError)
