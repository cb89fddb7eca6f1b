"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, JSON column type and shared enums
    pipeline: Pipeline definitions (source, steps, rules, schedule)
    job_execution: One row per pipeline run with stage-tagged logs
    job_queue: Durable queue entries and per-pipeline run leases
    pipeline_batch: Loaded batches keyed by (pipeline_id, batch_id)
    connection: Stored connector configuration and saved queries
    alert: Threshold alerts and their append-only history

Database Schema:
    All models inherit from the Base declarative class. JSON columns map to
    JSONB on PostgreSQL and plain JSON on other dialects.

Usage:
    from models import Pipeline, JobExecution, Alert
    from models.base import JobStatus, PipelineMode

Relationships:
    - Pipeline → JobExecution (one-to-many)
    - Connection → SavedQuery (one-to-many)
    - SavedQuery → Alert (one-to-many)
    - Alert → AlertHistory (one-to-many, append-only)
"""

from models.base import (
    Base,
    PipelineMode,
    RunStatus,
    JobStatus,
    QueueState,
    AlertStatus,
)
from models.pipeline import Pipeline
from models.job_execution import JobExecution
from models.job_queue import PipelineJob, PipelineLease
from models.pipeline_batch import PipelineBatch
from models.connection import Connection, SavedQuery
from models.alert import Alert, AlertHistory

__all__ = [
    "Base",
    "PipelineMode",
    "RunStatus",
    "JobStatus",
    "QueueState",
    "AlertStatus",
    "Pipeline",
    "JobExecution",
    "PipelineJob",
    "PipelineLease",
    "PipelineBatch",
    "Connection",
    "SavedQuery",
    "Alert",
    "AlertHistory",
]
