"""
Run trigger: "run now" entry point shared by the API and the scheduler.

Creating a run is one transaction: the PENDING JobExecution, the pipeline
lease and the queue entry are committed together or not at all.
"""

from datetime import datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.exceptions import PipelineBusyError, ResourceNotFoundError
from models.base import JobStatus
from models.job_execution import JobExecution
from models.job_queue import PipelineLease
from models.pipeline import Pipeline
from pipelines.job_queue import JobQueue

logger = logging.getLogger(__name__)


async def acquire_lease(db: AsyncSession, pipeline_id: str, execution_id: str,
                        ttl_seconds: Optional[int] = None) -> PipelineLease:
    """
    Take the per-pipeline lease inside the caller's transaction.

    An expired lease is taken over; an unexpired one raises PipelineBusyError.
    Two callers racing for a free lease collide on the primary key at commit.
    """
    now = datetime.utcnow()
    ttl = ttl_seconds or settings.PIPELINE_LEASE_TTL_SECONDS
    lease = await db.get(PipelineLease, pipeline_id)

    if lease is not None and lease.expires_at > now:
        raise PipelineBusyError(
            f"Pipeline {pipeline_id} is already running",
            context={"pipeline_id": pipeline_id, "active_execution_id": lease.execution_id},
        )

    if lease is not None:
        logger.warning(
            f"Lease on pipeline {pipeline_id} held by {lease.execution_id} expired at "
            f"{lease.expires_at.isoformat()}; taking over"
        )
        lease.execution_id = execution_id
        lease.acquired_at = now
        lease.expires_at = now + timedelta(seconds=ttl)
        return lease

    lease = PipelineLease(
        pipeline_id=pipeline_id,
        execution_id=execution_id,
        acquired_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )
    db.add(lease)
    return lease


async def release_lease(db: AsyncSession, pipeline_id: str, execution_id: str) -> None:
    """Drop the lease if ``execution_id`` still holds it; the caller commits."""
    await db.execute(
        delete(PipelineLease).where(
            PipelineLease.pipeline_id == pipeline_id,
            PipelineLease.execution_id == execution_id,
        )
    )


async def trigger_pipeline_run(
    db: AsyncSession,
    pipeline_id: str,
    trigger: str = "manual",
    queue: Optional[JobQueue] = None,
) -> JobExecution:
    """
    Create a PENDING execution, take the lease and enqueue the job.

    Raises:
        ResourceNotFoundError: Unknown pipeline
        PipelineBusyError: Another run of the pipeline holds the lease
    """
    queue = queue or JobQueue()
    pipeline = await db.get(Pipeline, pipeline_id)
    if pipeline is None:
        raise ResourceNotFoundError(f"Pipeline not found: {pipeline_id}", context={"pipeline_id": pipeline_id})

    execution = JobExecution(
        pipeline_id=pipeline.id,
        status=JobStatus.PENDING,
        trigger=trigger,
        logs=[],
        rows_processed=0,
        attempts=0,
        created_at=datetime.utcnow(),
    )
    db.add(execution)
    await db.flush()

    try:
        await acquire_lease(db, pipeline.id, execution.id)
        queue.enqueue(db, pipeline.id, execution.id, pipeline.source_type)
        await db.commit()
    except PipelineBusyError:
        await db.rollback()
        raise
    except IntegrityError as e:
        await db.rollback()
        raise PipelineBusyError(
            f"Pipeline {pipeline_id} is already running",
            context={"pipeline_id": pipeline_id},
            original_exception=e,
        )

    logger.info(f"Triggered {trigger} run {execution.id} for pipeline {pipeline.id}")
    return execution
