from sqlalchemy import Column, String, Enum, DateTime, Integer, Text, Index, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, JobStatus, new_id


class JobExecution(Base):
    """
    One attempt to run a pipeline, tracked PENDING -> PROCESSING -> terminal.

    Purpose:
    - Audit trail of all pipeline runs
    - Stage-tagged execution log shown to users
    - Error tracking without stack traces

    Created at enqueue time (PENDING) by the run trigger; every later
    mutation comes from the pipeline worker. Terminal rows are never touched.
    """
    __tablename__ = "job_executions"

    id = Column(String(36), primary_key=True, default=new_id)
    pipeline_id = Column(
        String(36), ForeignKey("pipelines.id", ondelete="CASCADE"), nullable=False, index=True
    )

    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    trigger = Column(String(20), nullable=False, default="manual")  # "manual", "schedule"

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Statistics
    rows_processed = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    batch_id = Column(String(100), nullable=True)

    # Log + error
    logs = Column(JSONType, nullable=False, default=list)
    error = Column(Text, nullable=True)

    # Relationships
    pipeline = relationship("Pipeline", back_populates="executions")

    __table_args__ = (
        Index("idx_execution_pipeline_status", "pipeline_id", "status"),
        Index("idx_execution_pipeline_created", "pipeline_id", "created_at"),
    )
