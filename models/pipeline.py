from sqlalchemy import Column, String, Enum, DateTime, Text, Boolean, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, PipelineMode, RunStatus, new_id


class Pipeline(Base):
    """
    Pipeline definition: where data comes from, how it is transformed and
    validated, and where it lands.

    Design:
    - source_config / destination_config are free-form JSON validated by the
      connector that consumes them
    - transformation_steps is an ordered JSON list; order is significant
    - quality_rules is a JSON list of declarative rules
    - last_run_at / last_status are written only by the pipeline worker
    """
    __tablename__ = "pipelines"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    workspace_id = Column(String(100), nullable=False, index=True)

    # Source / destination
    source_type = Column(String(50), nullable=False)
    source_config = Column(JSONType, nullable=False, default=dict)
    destination_type = Column(String(50), nullable=False, default="internal")
    destination_config = Column(JSONType, nullable=True)

    # Processing
    mode = Column(Enum(PipelineMode), nullable=False, default=PipelineMode.ETL)
    transformation_steps = Column(JSONType, nullable=True, default=list)
    quality_rules = Column(JSONType, nullable=True, default=list)

    # Scheduling
    schedule_cron = Column(String(100), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Run state (worker-owned)
    last_run_at = Column(DateTime, nullable=True)
    last_status = Column(Enum(RunStatus), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    executions = relationship(
        "JobExecution",
        back_populates="pipeline",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_pipeline_workspace_name", "workspace_id", "name"),
    )
