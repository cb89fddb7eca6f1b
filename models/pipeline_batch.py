from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Index
from datetime import datetime
from models.base import Base, JSONType


class PipelineBatch(Base):
    """
    Loaded batch in the internal datastore.

    Idempotency:
    - (pipeline_id, batch_id) is unique and every load is an upsert, so a
      redelivered job overwrites its own batch instead of duplicating it
    """
    __tablename__ = "pipeline_batches"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    pipeline_id = Column(String(36), nullable=False, index=True)
    batch_id = Column(String(100), nullable=False)
    execution_id = Column(String(36), nullable=False, index=True)

    mode = Column(String(10), nullable=False)  # "ETL" or "ELT" (raw)
    row_count = Column(Integer, nullable=False, default=0)
    columns = Column(JSONType, nullable=False, default=list)
    rows = Column(JSONType, nullable=False, default=list)

    loaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_batch_pipeline_batch", "pipeline_id", "batch_id", unique=True),
    )
