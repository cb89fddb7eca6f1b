"""
Pydantic schemas for data validation and serialization.

Schemas:
    pipeline: Pipeline CRUD, transformation steps, quality rules, executions
    connector: Connector config and the uniform query/schema result models
    api: Health, connection test and alert evaluation responses

Usage:
    from schemas.pipeline import TransformationStep, QualityRule
    from schemas.connector import ConnectionConfig, QueryResult

Example:
    step = TransformationStep(type="filter", column="age", operator=">=", value=21)
    assert step.operator == "gte"
"""

from schemas.pipeline import (
    TransformationStep,
    QualityRule,
    PipelineCreate,
    PipelineUpdate,
    PipelineResponse,
    JobExecutionResponse,
)
from schemas.connector import ConnectionConfig, SchemaInfo, QueryResult
from schemas.api import HealthCheckResponse

__all__ = [
    "TransformationStep",
    "QualityRule",
    "PipelineCreate",
    "PipelineUpdate",
    "PipelineResponse",
    "JobExecutionResponse",
    "ConnectionConfig",
    "SchemaInfo",
    "QueryResult",
    "HealthCheckResponse",
]
