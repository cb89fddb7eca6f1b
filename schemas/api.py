"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, root_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import AlertStatus, RunStatus

# ============================================================================
# Health Check Schemas
# ============================================================================

class PipelineHealthInfo(BaseModel):
    """Last run state of one pipeline, for the health check"""
    pipeline_id: str
    name: str
    last_run_at: Optional[datetime] = None
    last_status: Optional[RunStatus] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    pipelines: List[PipelineHealthInfo] = Field(default_factory=list)
    total_pipelines: int = 0
    failed_pipelines: int = 0
    queue_depth: Dict[str, int] = Field(default_factory=dict)
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @root_validator(skip_on_failure=True)
    def determine_status(cls, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            values["status"] = "unhealthy"
            return values

        failed = values.get("failed_pipelines", 0)
        total = values.get("total_pipelines", 0)

        if total == 0 or failed == 0:
            values["status"] = "healthy"
        elif failed < total:
            values["status"] = "degraded"
        else:
            values["status"] = "unhealthy"
        return values

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_pipelines": 2,
                "failed_pipelines": 0,
                "queue_depth": {"QUEUED": 1, "ACTIVE": 1, "DONE": 40, "DEAD": 0},
            }
        }


# ============================================================================
# Connection Schemas
# ============================================================================

class ConnectionTestRequest(BaseModel):
    """Ad-hoc connection test; either an inline config or a stored connection"""
    connection_id: Optional[str] = None
    type: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = Field(None, repr=False)
    api_url: Optional[str] = None
    auth_token: Optional[str] = Field(None, repr=False)
    extra_config: Dict[str, Any] = Field(default_factory=dict, repr=False)

    @root_validator(skip_on_failure=True)
    def require_source(cls, values):
        if not values.get("connection_id") and not values.get("type"):
            raise ValueError("either connection_id or type is required")
        return values


# ============================================================================
# Alert Schemas
# ============================================================================

class AlertEvaluationItem(BaseModel):
    alert_id: str
    name: str
    status: AlertStatus
    value: Optional[float] = None
    message: Optional[str] = None

    class Config:
        use_enum_values = True


class AlertEvaluationResponse(BaseModel):
    """Summary of one evaluation cycle"""
    evaluated: int
    triggered: int
    errors: int
    results: List[AlertEvaluationItem] = Field(default_factory=list)


class AlertHistoryResponse(BaseModel):
    id: int
    alert_id: str
    status: AlertStatus
    value: Optional[float] = None
    message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True
