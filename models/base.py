from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class PipelineMode(str, enum.Enum):
    """Where transformation happens"""
    ETL = "ETL"
    ELT = "ELT"


class RunStatus(str, enum.Enum):
    """Outcome of the most recent pipeline run"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class JobStatus(str, enum.Enum):
    """JobExecution lifecycle"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class QueueState(str, enum.Enum):
    """Queue entry lifecycle"""
    QUEUED = "QUEUED"
    ACTIVE = "ACTIVE"
    DONE = "DONE"
    DEAD = "DEAD"


class AlertStatus(str, enum.Enum):
    """Alert evaluation outcome"""
    OK = "OK"
    TRIGGERED = "TRIGGERED"
    ERROR = "ERROR"
