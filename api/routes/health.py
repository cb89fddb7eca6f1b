"""
Health check endpoint with database, pipeline and queue status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse, PipelineHealthInfo
from models.base import QueueState, RunStatus
from models.job_queue import PipelineJob
from models.pipeline import Pipeline
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Last run status for every active pipeline
    - Queue depth per state
    """

    db_connected = False
    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    pipelines = []
    queue_depth = {state.value: 0 for state in QueueState}
    if db_connected:
        try:
            result = await db.execute(select(Pipeline).where(Pipeline.is_active.is_(True)))
            for pipeline in result.scalars().all():
                pipelines.append(PipelineHealthInfo(
                    pipeline_id=pipeline.id,
                    name=pipeline.name,
                    last_run_at=pipeline.last_run_at,
                    last_status=pipeline.last_status,
                ))

            counts = await db.execute(
                select(PipelineJob.state, func.count(PipelineJob.id)).group_by(PipelineJob.state)
            )
            for state, count in counts.all():
                queue_depth[QueueState(state).value] = count
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch pipeline status: {str(e)}")

    failed = sum(1 for p in pipelines if p.last_status == RunStatus.FAILED.value)

    # overall status is derived by HealthCheckResponse
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        pipelines=pipelines,
        total_pipelines=len(pipelines),
        failed_pipelines=failed,
        queue_depth=queue_depth,
    )
