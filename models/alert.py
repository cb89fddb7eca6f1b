from sqlalchemy import Column, String, Float, Boolean, Enum, DateTime, Text, ForeignKey, Index, BigInteger, Integer
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, AlertStatus, new_id


class Alert(Base):
    """
    Threshold alert over a saved query.

    Evaluation reads ``column`` from the first row of the query result and
    compares it to ``threshold`` with ``operator``.
    """
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    query_id = Column(String(36), ForeignKey("saved_queries.id"), nullable=True, index=True)

    # Condition
    column = Column(String(200), nullable=False)
    operator = Column(String(2), nullable=False)  # >, <, >=, <=, =, !=
    threshold = Column(Float, nullable=False)
    schedule = Column(String(100), nullable=True)

    # Notification targets
    email = Column(String(1000), nullable=True)  # comma-separated
    webhook_url = Column(String(2048), nullable=True)
    webhook_headers = Column(JSONType, nullable=True)

    # Evaluation state
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_run_at = Column(DateTime, nullable=True)
    last_status = Column(Enum(AlertStatus), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    query = relationship("SavedQuery")
    history = relationship("AlertHistory", back_populates="alert", order_by="AlertHistory.id")


class AlertHistory(Base):
    """
    Append-only audit record: exactly one row per evaluation.
    """
    __tablename__ = "alert_history"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    alert_id = Column(String(36), ForeignKey("alerts.id"), nullable=False)
    status = Column(Enum(AlertStatus), nullable=False)
    value = Column(Float, nullable=True)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    alert = relationship("Alert", back_populates="history")

    __table_args__ = (
        Index("idx_alert_history_alert_created", "alert_id", "created_at"),
    )
