from sqlalchemy import Column, String, Integer, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from datetime import datetime
from models.base import Base, JSONType, new_id


class Connection(Base):
    """
    Stored connector configuration.

    Fields form a superset covering SQL, GraphQL and REST/CRM sources; each
    connector only validates the subset it needs.
    """
    __tablename__ = "connections"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    workspace_id = Column(String(100), nullable=True, index=True)
    type = Column(String(50), nullable=False)

    host = Column(String(255), nullable=True)
    port = Column(Integer, nullable=True)
    database = Column(String(255), nullable=True)
    username = Column(String(255), nullable=True)
    password = Column(String(255), nullable=True)

    api_url = Column(String(2048), nullable=True)
    auth_token = Column(Text, nullable=True)
    extra_config = Column(JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    queries = relationship("SavedQuery", back_populates="connection")

    def to_config(self):
        """Build the connector config for this connection."""
        from schemas.connector import ConnectionConfig

        return ConnectionConfig(
            type=self.type,
            host=self.host,
            port=self.port,
            database=self.database,
            username=self.username,
            password=self.password,
            api_url=self.api_url,
            auth_token=self.auth_token,
            extra_config=self.extra_config or {},
        )


class SavedQuery(Base):
    """SQL text saved against a connection; alerts re-run these."""
    __tablename__ = "saved_queries"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    connection_id = Column(String(36), ForeignKey("connections.id"), nullable=False, index=True)
    sql = Column(Text, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    connection = relationship("Connection", back_populates="queries")
