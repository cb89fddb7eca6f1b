"""
FastAPI dependencies: database sessions, the job queue and the cron secret.
"""

from typing import AsyncIterator, Optional

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.database import async_session_maker
from core.security import verify_bearer_token
from pipelines.job_queue import JobQueue


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_queue() -> JobQueue:
    return JobQueue()


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """401 unless the bearer token matches ALERT_CRON_SECRET (when one is set)."""
    if not verify_bearer_token(authorization, settings.ALERT_CRON_SECRET):
        raise HTTPException(status_code=401, detail="Unauthorized")
