"""
Durable, database-backed job queue for pipeline runs, and the worker pool
that drains it.

Delivery is at-least-once:
- ``claim`` flips one QUEUED entry to ACTIVE with a conditional UPDATE, so
  two workers can never hold the same entry
- an ACTIVE entry whose visibility timeout expired is redelivered by
  ``recover_stale``
- the load step upserts by (pipeline_id, batch_id), so redelivery is harmless
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import logging
import socket

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from core.database import async_session_maker, session_scope
from core.exceptions import ETLException, is_retryable
from models.base import QueueState
from models.job_queue import PipelineJob

logger = logging.getLogger(__name__)


def backoff_delay(attempts: int, base: Optional[float] = None) -> float:
    """Seconds to wait before attempt ``attempts + 1``: base * 2^(attempts-1)."""
    base = settings.JOB_BACKOFF_BASE_SECONDS if base is None else base
    return base * (2 ** max(attempts - 1, 0))


@dataclass
class ClaimedJob:
    """Detached snapshot of a claimed queue entry."""
    id: str
    execution_id: str
    pipeline_id: str
    source_type: Optional[str]
    attempts: int
    max_attempts: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_last_attempt(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_row(cls, row: PipelineJob) -> "ClaimedJob":
        return cls(
            id=row.id,
            execution_id=row.execution_id,
            pipeline_id=row.pipeline_id,
            source_type=row.source_type,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            payload=dict(row.payload or {}),
        )


class JobQueue:
    """
    Pipeline-run queue stored in ``pipeline_jobs``.

    Responsibilities:
    - Enqueue entries in the caller's transaction (with the execution row)
    - Atomic claim with a visibility timeout
    - Retry with exponential backoff; exhausted entries become DEAD
    - Redeliver stale claims and prune finished entries to bounded counts
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        visibility_timeout: Optional[int] = None,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS
        self.backoff_base = settings.JOB_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base
        self.visibility_timeout = visibility_timeout or settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        self.keep_completed = settings.QUEUE_KEEP_COMPLETED if keep_completed is None else keep_completed
        self.keep_failed = settings.QUEUE_KEEP_FAILED if keep_failed is None else keep_failed

    def enqueue(
        self,
        db: AsyncSession,
        pipeline_id: str,
        execution_id: str,
        source_type: Optional[str] = None,
    ) -> PipelineJob:
        """Add a queue entry to ``db``; the caller commits."""
        job = PipelineJob(
            execution_id=execution_id,
            pipeline_id=pipeline_id,
            source_type=source_type,
            payload={"pipeline_id": pipeline_id, "execution_id": execution_id, "source_type": source_type},
            state=QueueState.QUEUED,
            attempts=0,
            max_attempts=self.max_attempts,
            available_at=datetime.utcnow(),
        )
        db.add(job)
        logger.info(f"Enqueued execution {execution_id} for pipeline {pipeline_id}")
        return job

    async def claim(self, worker_id: str, scan: int = 10) -> Optional[ClaimedJob]:
        """
        Claim the oldest available entry, or return None.

        Only the UPDATE that still sees state=QUEUED wins, so concurrent
        claimers never share an entry.
        """
        async with session_scope(self.session_factory) as db:
            now = datetime.utcnow()
            result = await db.execute(
                select(PipelineJob.id)
                .where(PipelineJob.state == QueueState.QUEUED, PipelineJob.available_at <= now)
                .order_by(PipelineJob.available_at, PipelineJob.created_at)
                .limit(scan)
            )
            for job_id in result.scalars().all():
                claimed = await db.execute(
                    update(PipelineJob)
                    .where(PipelineJob.id == job_id, PipelineJob.state == QueueState.QUEUED)
                    .values(
                        state=QueueState.ACTIVE,
                        attempts=PipelineJob.attempts + 1,
                        locked_by=worker_id,
                        locked_until=now + timedelta(seconds=self.visibility_timeout),
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    continue
                await db.commit()
                row = await db.get(PipelineJob, job_id)
                logger.debug(f"{worker_id} claimed job {job_id} (attempt {row.attempts}/{row.max_attempts})")
                return ClaimedJob.from_row(row)
            return None

    async def heartbeat(self, job_id: str, worker_id: str) -> bool:
        """
        Extend ``worker_id``'s claim by another visibility timeout.

        Returns:
            False when the entry is no longer ACTIVE under this worker
        """
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                update(PipelineJob)
                .where(
                    PipelineJob.id == job_id,
                    PipelineJob.state == QueueState.ACTIVE,
                    PipelineJob.locked_by == worker_id,
                )
                .values(locked_until=datetime.utcnow() + timedelta(seconds=self.visibility_timeout))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def ack(self, job_id: str, worker_id: Optional[str] = None) -> bool:
        """
        Mark an entry DONE.

        With ``worker_id`` the ack only lands while that worker still holds
        the claim; a late ack from a worker whose claim was taken over is
        ignored.
        """
        conditions = [PipelineJob.id == job_id]
        if worker_id is not None:
            conditions += [PipelineJob.state == QueueState.ACTIVE, PipelineJob.locked_by == worker_id]
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                update(PipelineJob)
                .where(*conditions)
                .values(state=QueueState.DONE, finished_at=datetime.utcnow(), locked_by=None, locked_until=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Ignored ack for job {job_id} from {worker_id}: claim no longer held")
            return False
        return True

    async def fail(self, job_id: str, error: str, retryable: bool = True,
                   worker_id: Optional[str] = None) -> bool:
        """
        Record a failed attempt.

        With ``worker_id`` the failure is ignored unless that worker still
        holds the claim.

        Returns:
            True if the entry was re-queued with backoff, False if it is DEAD
            or the failure was ignored
        """
        async with session_scope(self.session_factory) as db:
            job = await db.get(PipelineJob, job_id)
            if job is None:
                logger.warning(f"Cannot fail unknown job {job_id}")
                return False
            if worker_id is not None and (job.state != QueueState.ACTIVE or job.locked_by != worker_id):
                logger.warning(f"Ignored failure for job {job_id} from {worker_id}: claim no longer held")
                return False

            now = datetime.utcnow()
            job.last_error = error
            job.locked_by = None
            job.locked_until = None
            will_retry = retryable and job.attempts < job.max_attempts
            if will_retry:
                delay = backoff_delay(job.attempts, self.backoff_base)
                job.state = QueueState.QUEUED
                job.available_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Job {job_id} failed (attempt {job.attempts}/{job.max_attempts}); retrying in {delay:.1f}s"
                )
            else:
                job.state = QueueState.DEAD
                job.finished_at = now
                logger.error(f"Job {job_id} is dead after {job.attempts} attempts: {error}")
            await db.commit()
            return will_retry

    async def recover_stale(self) -> Tuple[int, List[str]]:
        """
        Redeliver ACTIVE entries whose visibility timeout expired.

        Returns:
            (number re-queued, execution ids of entries that went DEAD)
        """
        async with session_scope(self.session_factory) as db:
            now = datetime.utcnow()
            result = await db.execute(
                select(PipelineJob).where(
                    PipelineJob.state == QueueState.ACTIVE,
                    PipelineJob.locked_until < now,
                )
            )
            requeued, dead = 0, []
            for job in result.scalars().all():
                job.last_error = f"Claim by {job.locked_by} expired"
                job.locked_by = None
                job.locked_until = None
                if job.attempts < job.max_attempts:
                    job.state = QueueState.QUEUED
                    job.available_at = now
                    requeued += 1
                else:
                    job.state = QueueState.DEAD
                    job.finished_at = now
                    dead.append(job.execution_id)
            await db.commit()

        if requeued or dead:
            logger.warning(f"Recovered stale jobs: {requeued} re-queued, {len(dead)} dead")
        return requeued, dead

    async def prune(self) -> int:
        """Keep only the newest ``keep_completed`` DONE and ``keep_failed`` DEAD entries."""
        removed = 0
        async with session_scope(self.session_factory) as db:
            for state, keep in ((QueueState.DONE, self.keep_completed), (QueueState.DEAD, self.keep_failed)):
                keep_ids = (
                    select(PipelineJob.id)
                    .where(PipelineJob.state == state)
                    .order_by(PipelineJob.finished_at.desc(), PipelineJob.created_at.desc())
                    .limit(keep)
                )
                kept = set((await db.execute(keep_ids)).scalars().all())
                all_ids = (await db.execute(
                    select(PipelineJob.id).where(PipelineJob.state == state)
                )).scalars().all()
                stale = [job_id for job_id in all_ids if job_id not in kept]
                if stale:
                    await db.execute(delete(PipelineJob).where(PipelineJob.id.in_(stale)))
                    removed += len(stale)
            await db.commit()

        if removed:
            logger.info(f"Pruned {removed} finished queue entries")
        return removed

    async def counts(self) -> Dict[str, int]:
        """Entries per state, for health reporting."""
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(PipelineJob.state, func.count(PipelineJob.id)).group_by(PipelineJob.state)
            )
            counts = {state.value: 0 for state in QueueState}
            for state, count in result.all():
                counts[QueueState(state).value] = count
            return counts


class WorkerPool:
    """
    Fixed-size pool of asyncio workers draining the queue.

    Each worker loops claim -> process -> ack/fail. The pipeline worker
    decides the execution outcome; the pool only settles the queue entry.
    """

    def __init__(self, queue: JobQueue, worker, concurrency: Optional[int] = None,
                 poll_interval: Optional[float] = None):
        self.queue = queue
        self.worker = worker
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL_SECONDS
        self.name_prefix = f"{socket.gethostname()}-worker"
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(f"{self.name_prefix}-{i}"), name=f"{self.name_prefix}-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Worker pool started with {self.concurrency} workers")

    async def stop(self, timeout: float = 30.0) -> None:
        """Let in-flight jobs finish, then stop. Jobs still running after ``timeout`` are cancelled."""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _run(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once(worker_id)
            except Exception as e:
                # queue/database hiccup; keep the worker alive
                logger.error(f"{worker_id} loop error: {e}", exc_info=True)
                processed = False
            if not processed:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    async def run_once(self, worker_id: str = "worker-0") -> bool:
        """Claim and process a single job. Returns False when the queue is empty."""
        job = await self.queue.claim(worker_id)
        if job is None:
            return False

        keeper = asyncio.create_task(self._keep_claim(job, worker_id))
        try:
            await self.worker.process(job)
        except Exception as e:
            await self._stop_keeper(keeper)
            message = e.message if isinstance(e, ETLException) else str(e)
            await self.queue.fail(job.id, message, retryable=is_retryable(e), worker_id=worker_id)
            extra = {"error_context": e.to_dict()} if isinstance(e, ETLException) else {}
            logger.error(f"{worker_id} job {job.id} failed: {message}", extra=extra)
        else:
            await self._stop_keeper(keeper)
            await self.queue.ack(job.id, worker_id=worker_id)
        finally:
            keeper.cancel()
        return True

    async def _keep_claim(self, job: ClaimedJob, worker_id: str) -> None:
        """Heartbeat the claim while the job runs so it is not redelivered."""
        interval = max(self.queue.visibility_timeout / 3, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.queue.heartbeat(job.id, worker_id)
            except Exception as e:
                logger.error(f"{worker_id} heartbeat for job {job.id} failed: {e}")
                continue
            if not held:
                logger.warning(f"{worker_id} lost the claim on job {job.id}")
                return

    @staticmethod
    async def _stop_keeper(keeper: asyncio.Task) -> None:
        if keeper.done():
            return
        keeper.cancel()
        await asyncio.gather(keeper, return_exceptions=True)
