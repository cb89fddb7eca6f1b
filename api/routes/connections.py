"""
Connection test and schema discovery
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from connectors import create_connector
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConnectorError,
    QueryExecutionError,
    ResourceNotFoundError,
)
from models.connection import Connection
from schemas.api import ConnectionTestRequest
from schemas.connector import ConnectionConfig, ConnectionTestResult, SchemaInfo

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connections", tags=["Connections"])


async def _stored_config(db: AsyncSession, connection_id: str) -> ConnectionConfig:
    connection = await db.get(Connection, connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail=f"Connection not found: {connection_id}")
    return connection.to_config()


@router.post("/test", response_model=ConnectionTestResult)
async def test_connection(body: ConnectionTestRequest, db: AsyncSession = Depends(get_db)):
    """
    Check connectivity for a stored connection or an inline config.

    Always 200; failures are reported in the body with credentials redacted.
    """
    if body.connection_id:
        config = await _stored_config(db, body.connection_id)
    else:
        config = ConnectionConfig(**body.dict(exclude={"connection_id"}))

    try:
        connector = create_connector(config)
    except ConfigurationError as e:
        return ConnectionTestResult(success=False, error=e.message)

    try:
        return await connector.test_connection()
    finally:
        await connector.disconnect()


@router.post("/{connection_id}/schema", response_model=SchemaInfo)
async def fetch_schema(connection_id: str, db: AsyncSession = Depends(get_db)):
    """Tables and columns of a stored connection"""
    config = await _stored_config(db, connection_id)
    try:
        async with create_connector(config) as connector:
            return await connector.fetch_schema()
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=e.message)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except (AuthenticationError, QueryExecutionError) as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ConnectorError as e:
        logger.warning(f"Schema fetch failed for connection {connection_id}: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
