from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index
from datetime import datetime
from models.base import Base, JSONType, QueueState, new_id


class PipelineJob(Base):
    """
    Durable queue entry; exactly one per JobExecution.

    Design:
    - QUEUED entries become claimable once available_at has passed
    - claiming flips QUEUED -> ACTIVE with a conditional UPDATE and stamps
      locked_until (visibility timeout)
    - ACTIVE entries whose lock expired are redelivered (at-least-once)
    - DONE / DEAD entries are retained up to a bounded count
    """
    __tablename__ = "pipeline_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    execution_id = Column(String(36), nullable=False, unique=True)
    pipeline_id = Column(String(36), nullable=False, index=True)
    source_type = Column(String(50), nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)

    state = Column(Enum(QueueState), nullable=False, default=QueueState.QUEUED)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    available_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    locked_by = Column(String(100), nullable=True)
    locked_until = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_job_state_available", "state", "available_at"),
        Index("idx_job_state_finished", "state", "finished_at"),
    )


class PipelineLease(Base):
    """
    Per-pipeline run lease. Its presence (unexpired) means a run of the
    pipeline is pending or in flight; a second run is refused until the
    worker releases it at a terminal state.
    """
    __tablename__ = "pipeline_leases"

    pipeline_id = Column(String(36), primary_key=True)
    execution_id = Column(String(36), nullable=False)
    acquired_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
