import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import select, update

from models import JobExecution, PipelineJob
from pipelines.job_queue import JobQueue
from pipelines.scheduler import PIPELINE_JOB_PREFIX, PipelineScheduler


@pytest.fixture
async def paused_scheduler():
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.start(paused=True)
    yield scheduler
    scheduler.shutdown(wait=False)


@pytest.fixture
def pipeline_scheduler(session_factory, paused_scheduler):
    return PipelineScheduler(
        session_factory=session_factory,
        queue=JobQueue(session_factory, backoff_base=0),
        scheduler=paused_scheduler,
    )


@pytest.mark.asyncio
async def test_sync_registers_scheduled_pipelines(pipeline_scheduler, make_pipeline):
    hourly = await make_pipeline(name="hourly", schedule_cron="0 * * * *")
    await make_pipeline(name="manual")
    await make_pipeline(name="paused", schedule_cron="0 * * * *", is_active=False)
    await make_pipeline(name="broken", schedule_cron="every tuesday")

    registered = await pipeline_scheduler.sync_pipelines()

    assert registered == 1
    job_ids = [job.id for job in pipeline_scheduler.scheduler.get_jobs()]
    assert job_ids == [f"{PIPELINE_JOB_PREFIX}{hourly.id}"]


@pytest.mark.asyncio
async def test_sync_drops_unscheduled_pipelines(pipeline_scheduler, make_pipeline, db_session):
    pipeline = await make_pipeline(schedule_cron="*/5 * * * *")
    await pipeline_scheduler.sync_pipelines()

    pipeline.is_active = False
    await db_session.commit()
    registered = await pipeline_scheduler.sync_pipelines()

    assert registered == 0
    assert pipeline_scheduler.scheduler.get_jobs() == []


@pytest.mark.asyncio
async def test_scheduled_run_skips_busy_pipeline(pipeline_scheduler, make_pipeline, session_factory):
    pipeline = await make_pipeline(schedule_cron="*/5 * * * *")

    await pipeline_scheduler.run_scheduled(pipeline.id)
    await pipeline_scheduler.run_scheduled(pipeline.id)  # lease still held

    async with session_factory() as db:
        executions = (await db.execute(select(JobExecution))).scalars().all()
    assert len(executions) == 1
    assert executions[0].trigger == "schedule"


@pytest.mark.asyncio
async def test_scheduled_run_for_deleted_pipeline_unschedules(pipeline_scheduler):
    job_id = f"{PIPELINE_JOB_PREFIX}gone"
    pipeline_scheduler.scheduler.add_job(pipeline_scheduler.run_scheduled, "interval", minutes=5, id=job_id)

    await pipeline_scheduler.run_scheduled("gone")

    assert pipeline_scheduler.scheduler.get_job(job_id) is None


@pytest.mark.asyncio
async def test_maintenance_abandons_dead_executions(session_factory):
    queue = JobQueue(session_factory, max_attempts=1, backoff_base=0)
    worker = AsyncMock()
    scheduler = PipelineScheduler(session_factory=session_factory, queue=queue, worker=worker)

    async with session_factory() as db:
        job = queue.enqueue(db, "pipe-1", "exec-1")
        await db.commit()
    await queue.claim("w1")
    async with session_factory() as db:
        await db.execute(
            update(PipelineJob)
            .where(PipelineJob.id == job.id)
            .values(locked_until=datetime.utcnow() - timedelta(seconds=1))
        )
        await db.commit()

    await scheduler.maintain_queue()

    worker.abandon.assert_awaited_once()
    assert worker.abandon.await_args.args[0] == "exec-1"
