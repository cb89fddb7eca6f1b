"""
Unit tests for the durable job queue, worker pool and run leases
"""

from datetime import datetime, timedelta
import asyncio

import pytest
from sqlalchemy import select, update

from core.exceptions import (
    PipelineBusyError,
    QualityGateFailure,
    ResourceNotFoundError,
    SourceConnectionError,
)
from models import JobExecution, PipelineJob, PipelineLease
from models.base import JobStatus, QueueState
from pipelines.job_queue import JobQueue, WorkerPool, backoff_delay
from pipelines.trigger import release_lease, trigger_pipeline_run


async def enqueue(session_factory, queue, execution_id="exec-1", pipeline_id="pipe-1"):
    async with session_factory() as db:
        job = queue.enqueue(db, pipeline_id, execution_id, "postgres")
        await db.commit()
        return job.id


async def get_job(session_factory, job_id):
    async with session_factory() as db:
        return await db.get(PipelineJob, job_id)


class TestJobQueue:
    """Claim / ack / fail state machine"""

    @pytest.fixture
    def queue(self, session_factory):
        return JobQueue(session_factory, max_attempts=3, backoff_base=0)

    def test_backoff_doubles(self):
        assert [backoff_delay(n, 2) for n in (1, 2, 3)] == [2, 4, 8]

    async def test_claim_is_exclusive(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)

        first = await queue.claim("w1")
        second = await queue.claim("w2")

        assert first.id == job_id
        assert first.attempts == 1
        assert first.execution_id == "exec-1"
        assert second is None

        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.ACTIVE
        assert row.locked_by == "w1"

    async def test_heartbeat_extends_only_own_claim(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")
        before = (await get_job(session_factory, job_id)).locked_until

        assert await queue.heartbeat(job_id, "w1") is True
        assert (await get_job(session_factory, job_id)).locked_until >= before
        assert await queue.heartbeat(job_id, "w2") is False

    async def test_late_settle_from_previous_holder_is_ignored(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w-0")
        async with session_factory() as db:
            await db.execute(
                update(PipelineJob)
                .where(PipelineJob.id == job_id)
                .values(locked_until=datetime.utcnow() - timedelta(seconds=5))
            )
            await db.commit()
        assert await queue.recover_stale() == (1, [])
        taken = await queue.claim("w-1")
        assert taken.id == job_id
        assert taken.attempts == 2

        assert await queue.heartbeat(job_id, "w-0") is False
        assert await queue.ack(job_id, worker_id="w-0") is False
        assert await queue.fail(job_id, "late failure", worker_id="w-0") is False

        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.ACTIVE
        assert row.locked_by == "w-1"
        assert await queue.ack(job_id, worker_id="w-1") is True
        assert (await get_job(session_factory, job_id)).state == QueueState.DONE

    async def test_claims_oldest_first(self, session_factory, queue):
        first_id = await enqueue(session_factory, queue, execution_id="a")
        await enqueue(session_factory, queue, execution_id="b")

        claimed = await queue.claim("w1")
        assert claimed.id == first_id

    async def test_ack_marks_done(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")

        await queue.ack(job_id)

        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.DONE
        assert row.finished_at is not None
        assert row.locked_by is None

    async def test_retryable_failure_requeues(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")

        will_retry = await queue.fail(job_id, "connection reset", retryable=True)
        assert will_retry is True

        again = await queue.claim("w1")
        assert again.id == job_id
        assert again.attempts == 2

    async def test_backoff_delays_redelivery(self, session_factory):
        queue = JobQueue(session_factory, max_attempts=3, backoff_base=60)
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")

        await queue.fail(job_id, "timeout", retryable=True)

        assert await queue.claim("w1") is None
        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.QUEUED
        assert row.available_at > datetime.utcnow() + timedelta(seconds=30)

    async def test_exhausted_attempts_go_dead(self, session_factory):
        queue = JobQueue(session_factory, max_attempts=2, backoff_base=0)
        job_id = await enqueue(session_factory, queue)

        await queue.claim("w1")
        assert await queue.fail(job_id, "boom") is True
        await queue.claim("w1")
        assert await queue.fail(job_id, "boom") is False

        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.DEAD
        assert row.attempts == 2
        assert row.last_error == "boom"

    async def test_non_retryable_failure_goes_dead(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")

        assert await queue.fail(job_id, "quality gate", retryable=False) is False
        assert (await get_job(session_factory, job_id)).state == QueueState.DEAD

    async def test_recover_stale_redelivers(self, session_factory, queue):
        job_id = await enqueue(session_factory, queue)
        await queue.claim("w1")
        async with session_factory() as db:
            await db.execute(
                update(PipelineJob)
                .where(PipelineJob.id == job_id)
                .values(locked_until=datetime.utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        requeued, dead = await queue.recover_stale()

        assert (requeued, dead) == (1, [])
        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.QUEUED
        assert "expired" in row.last_error

    async def test_recover_stale_on_last_attempt_goes_dead(self, session_factory):
        queue = JobQueue(session_factory, max_attempts=1, backoff_base=0)
        job_id = await enqueue(session_factory, queue, execution_id="exec-9")
        await queue.claim("w1")
        async with session_factory() as db:
            await db.execute(
                update(PipelineJob)
                .where(PipelineJob.id == job_id)
                .values(locked_until=datetime.utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        assert await queue.recover_stale() == (0, ["exec-9"])

    async def test_prune_keeps_newest(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=0, keep_completed=1, keep_failed=0)
        for i in range(3):
            job_id = await enqueue(session_factory, queue, execution_id=f"done-{i}")
            await queue.claim("w1")
            await queue.ack(job_id)
        dead_id = await enqueue(session_factory, queue, execution_id="dead")
        await queue.claim("w1")
        await queue.fail(dead_id, "x", retryable=False)

        removed = await queue.prune()

        assert removed == 3
        counts = await queue.counts()
        assert counts["DONE"] == 1
        assert counts["DEAD"] == 0


class RecordingWorker:
    def __init__(self, error=None):
        self.error = error
        self.jobs = []

    async def process(self, job):
        self.jobs.append(job)
        if self.error is not None:
            raise self.error


class SlowWorker:
    def __init__(self, seconds):
        self.seconds = seconds

    async def process(self, job):
        await asyncio.sleep(self.seconds)


class TestWorkerPool:
    """Settling queue entries from worker outcomes"""

    async def test_empty_queue(self, session_factory):
        pool = WorkerPool(JobQueue(session_factory), RecordingWorker())
        assert await pool.run_once() is False

    async def test_success_acks(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=0)
        job_id = await enqueue(session_factory, queue)
        worker = RecordingWorker()

        assert await WorkerPool(queue, worker).run_once() is True

        assert worker.jobs[0].id == job_id
        assert (await get_job(session_factory, job_id)).state == QueueState.DONE

    async def test_transient_error_requeues(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=0)
        job_id = await enqueue(session_factory, queue)

        await WorkerPool(queue, RecordingWorker(SourceConnectionError("db down"))).run_once()

        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.QUEUED
        assert row.last_error == "db down"

    async def test_quality_failure_is_terminal(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=0)
        job_id = await enqueue(session_factory, queue)

        await WorkerPool(queue, RecordingWorker(QualityGateFailure("3 FAIL violations"))).run_once()

        assert (await get_job(session_factory, job_id)).state == QueueState.DEAD

    async def test_long_job_keeps_its_claim(self, session_factory):
        queue = JobQueue(session_factory, backoff_base=0, visibility_timeout=1)
        job_id = await enqueue(session_factory, queue)
        pool = WorkerPool(queue, SlowWorker(1.5))

        run = asyncio.create_task(pool.run_once("w-0"))
        await asyncio.sleep(1.2)

        assert await queue.recover_stale() == (0, [])
        assert await queue.claim("w-1") is None
        assert await run is True
        row = await get_job(session_factory, job_id)
        assert row.state == QueueState.DONE
        assert row.attempts == 1

    async def test_start_and_stop(self, session_factory):
        pool = WorkerPool(JobQueue(session_factory), RecordingWorker(), concurrency=2, poll_interval=0.01)
        pool.start()
        assert pool.running

        await pool.stop(timeout=5)
        assert not pool.running


class TestRunTrigger:
    """Per-pipeline lease and enqueue-on-trigger"""

    async def test_trigger_creates_pending_execution_and_job(self, session_factory, db_session, make_pipeline):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)

        execution = await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        assert execution.status == JobStatus.PENDING
        assert execution.trigger == "manual"
        async with session_factory() as db:
            jobs = (await db.execute(select(PipelineJob))).scalars().all()
            lease = await db.get(PipelineLease, pipeline.id)
        assert [j.execution_id for j in jobs] == [execution.id]
        assert lease.execution_id == execution.id

    async def test_second_trigger_is_busy(self, session_factory, db_session, make_pipeline):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)
        await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        with pytest.raises(PipelineBusyError):
            await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        async with session_factory() as db:
            executions = (await db.execute(select(JobExecution))).scalars().all()
        assert len(executions) == 1

    async def test_release_allows_next_run(self, session_factory, db_session, make_pipeline):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)
        first = await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        async with session_factory() as db:
            await release_lease(db, pipeline.id, first.id)
            await db.commit()

        async with session_factory() as db:
            second = await trigger_pipeline_run(db, pipeline.id, queue=queue)
        assert second.id != first.id

    async def test_release_by_other_execution_is_noop(self, session_factory, db_session, make_pipeline):
        pipeline = await make_pipeline()
        first = await trigger_pipeline_run(db_session, pipeline.id, queue=JobQueue(session_factory))

        async with session_factory() as db:
            await release_lease(db, pipeline.id, "someone-else")
            await db.commit()
            lease = await db.get(PipelineLease, pipeline.id)
        assert lease.execution_id == first.id

    async def test_expired_lease_is_taken_over(self, session_factory, db_session, make_pipeline):
        pipeline = await make_pipeline()
        past = datetime.utcnow() - timedelta(hours=2)
        db_session.add(PipelineLease(
            pipeline_id=pipeline.id,
            execution_id="crashed-run",
            acquired_at=past,
            expires_at=past + timedelta(hours=1),
        ))
        await db_session.commit()

        execution = await trigger_pipeline_run(db_session, pipeline.id, queue=JobQueue(session_factory))

        async with session_factory() as db:
            lease = await db.get(PipelineLease, pipeline.id)
        assert lease.execution_id == execution.id

    async def test_unknown_pipeline(self, db_session, session_factory):
        with pytest.raises(ResourceNotFoundError):
            await trigger_pipeline_run(db_session, "missing", queue=JobQueue(session_factory))
