import logging
from datetime import datetime
from typing import Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.database import async_session_maker, session_scope
from core.exceptions import PipelineBusyError, ResourceNotFoundError
from models.pipeline import Pipeline
from pipelines.job_queue import JobQueue
from pipelines.trigger import trigger_pipeline_run

logger = logging.getLogger(__name__)

PIPELINE_JOB_PREFIX = "pipeline:"


class PipelineScheduler:
    """
    Cron triggers for scheduled pipelines plus periodic queue maintenance.

    Scheduled runs go through the same trigger as "run now", so a schedule
    firing while the pipeline is busy is skipped, never stacked.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        queue: Optional[JobQueue] = None,
        worker=None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.worker = worker
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    def _scheduled_ids(self) -> Set[str]:
        return {
            job.id[len(PIPELINE_JOB_PREFIX):]
            for job in self.scheduler.get_jobs()
            if job.id.startswith(PIPELINE_JOB_PREFIX)
        }

    async def sync_pipelines(self) -> int:
        """Register a cron job per active scheduled pipeline; drop the rest."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(Pipeline).where(Pipeline.is_active.is_(True), Pipeline.schedule_cron.isnot(None))
            )
            pipelines = result.scalars().all()

        wanted = set()
        for pipeline in pipelines:
            try:
                trigger = CronTrigger.from_crontab(pipeline.schedule_cron, timezone="UTC")
            except ValueError as e:
                logger.warning(f"Scheduler: invalid cron '{pipeline.schedule_cron}' for pipeline {pipeline.id}: {e}")
                continue
            self.scheduler.add_job(
                self.run_scheduled,
                trigger=trigger,
                args=[pipeline.id],
                id=f"{PIPELINE_JOB_PREFIX}{pipeline.id}",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            wanted.add(pipeline.id)

        for pipeline_id in self._scheduled_ids() - wanted:
            self.scheduler.remove_job(f"{PIPELINE_JOB_PREFIX}{pipeline_id}")
            logger.info(f"Scheduler: unscheduled pipeline {pipeline_id}")

        return len(wanted)

    async def run_scheduled(self, pipeline_id: str) -> None:
        """Job to enqueue a scheduled run"""
        async with session_scope(self.session_factory) as session:
            try:
                execution = await trigger_pipeline_run(session, pipeline_id, trigger="schedule", queue=self.queue)
                logger.info(f"Scheduler: queued run {execution.id} for pipeline {pipeline_id}")
            except PipelineBusyError:
                logger.info(f"Scheduler: pipeline {pipeline_id} is busy; skipping this tick")
            except ResourceNotFoundError:
                logger.warning(f"Scheduler: pipeline {pipeline_id} no longer exists")
                job_id = f"{PIPELINE_JOB_PREFIX}{pipeline_id}"
                if self.scheduler.get_job(job_id):
                    self.scheduler.remove_job(job_id)

    async def maintain_queue(self) -> None:
        """Redeliver stale claims, fail executions whose entries died, prune history"""
        try:
            _, dead = await self.queue.recover_stale()
            if self.worker is not None:
                for execution_id in dead:
                    await self.worker.abandon(execution_id, "Job claim expired after the final attempt.")
            await self.queue.prune()
        except Exception as e:
            logger.error(f"Scheduler: queue maintenance failed - {e}", exc_info=True)

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.sync_pipelines,
            trigger=IntervalTrigger(minutes=5),
            id="sync_pipelines",
            next_run_time=datetime.utcnow(),
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.maintain_queue,
            trigger=IntervalTrigger(seconds=settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS),
            id="queue_maintenance",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Pipeline Scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Pipeline Scheduler stopped")
