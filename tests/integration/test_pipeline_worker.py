"""
Integration tests for pipeline runs: trigger -> queue -> worker -> batch
"""

import dataclasses

import pytest
from sqlalchemy import select, update

from core.exceptions import SourceConnectionError, TransientJobError
from models import JobExecution, Pipeline, PipelineBatch, PipelineJob, PipelineLease
from models.base import JobStatus, PipelineMode, QueueState, RunStatus
from pipelines.job_queue import JobQueue, WorkerPool
from pipelines.loaders.batch_loader import PostLoadTransformer
from pipelines.trigger import trigger_pipeline_run
from pipelines.worker import PipelineWorker


class RecordingPostLoad(PostLoadTransformer):
    def __init__(self):
        self.calls = []

    async def submit(self, pipeline, batch_id, steps):
        self.calls.append((batch_id, steps))


@pytest.fixture
def run_pipeline(session_factory):
    """Trigger a pipeline and drain the queue ``runs`` times; returns the fresh execution row"""

    async def run(pipeline, connector_factory, runs=1, max_attempts=3, post_load=None):
        queue = JobQueue(session_factory, max_attempts=max_attempts, backoff_base=0)
        worker = PipelineWorker(
            session_factory,
            connector_factory=connector_factory,
            post_load=post_load,
            backoff_base=0,
        )
        async with session_factory() as db:
            execution = await trigger_pipeline_run(db, pipeline.id, queue=queue)
        pool = WorkerPool(queue, worker)
        for _ in range(runs):
            await pool.run_once()

        async with session_factory() as db:
            return await db.get(JobExecution, execution.id)

    return run


async def fetch_all(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(model))).scalars().all()


class TestSuccessfulRuns:

    @pytest.mark.asyncio
    async def test_etl_run_transforms_and_loads(self, make_pipeline, run_pipeline, fake_connector,
                                                people_rows, session_factory):
        """100 extracted rows, 10 minors filtered -> 90 loaded"""
        pipeline = await make_pipeline(transformation_steps=[
            {"type": "trim", "column": "name"},
            {"type": "filter", "column": "age", "operator": ">=", "value": 21},
        ])
        factory = fake_connector(people_rows)

        execution = await run_pipeline(pipeline, factory)

        assert execution.status == JobStatus.COMPLETED
        assert execution.rows_processed == 90
        assert execution.attempts == 1
        assert execution.error is None
        assert execution.duration_ms is not None
        assert execution.logs[0].startswith("[START]")
        assert "[INFO] Pipeline Mode: ETL" in execution.logs
        assert "[EXTRACT] Extracted 100 rows." in execution.logs
        assert "[TRANSFORM] Filter/Dedupe dropped 10 rows." in execution.logs
        assert execution.logs[-1] == "[SUCCESS] Job completed successfully."
        assert factory.connector.queries == ["SELECT * FROM people"]
        assert factory.connector.closed == 1

        batches = await fetch_all(session_factory, PipelineBatch)
        assert len(batches) == 1
        assert batches[0].batch_id == execution.batch_id
        assert batches[0].row_count == 90
        assert batches[0].rows[0]["name"] == "Person 11"

        assert await fetch_all(session_factory, PipelineLease) == []
        jobs = await fetch_all(session_factory, PipelineJob)
        assert jobs[0].state == QueueState.DONE

        async with session_factory() as db:
            refreshed = await db.get(Pipeline, pipeline.id)
        assert refreshed.last_status == RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_no_steps_logged_as_skipped(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline()
        execution = await run_pipeline(pipeline, fake_connector([{"id": 1}]))

        assert "[TRANSFORM] No rules defined. Skipping." in execution.logs
        assert execution.rows_processed == 1

    @pytest.mark.asyncio
    async def test_warn_violations_do_not_block_load(self, make_pipeline, run_pipeline, fake_connector,
                                                     people_rows):
        for row in people_rows[:3]:
            row["email"] = None
        pipeline = await make_pipeline(quality_rules=[
            {"column": "email", "type": "not_null", "severity": "WARN"},
        ])

        execution = await run_pipeline(pipeline, fake_connector(people_rows))

        assert execution.status == JobStatus.COMPLETED
        assert execution.rows_processed == 100
        assert "[QUALITY] Found 3 violations." in execution.logs
        assert "[QUALITY] Proceeding with 3 warnings." in execution.logs

    @pytest.mark.asyncio
    async def test_elt_loads_raw_rows_and_hands_off(self, make_pipeline, run_pipeline, fake_connector,
                                                    session_factory):
        steps = [{"type": "trim", "column": "name"}]
        pipeline = await make_pipeline(mode=PipelineMode.ELT, transformation_steps=steps)
        post_load = RecordingPostLoad()

        execution = await run_pipeline(pipeline, fake_connector([{"name": "  raw  "}]), post_load=post_load)

        assert execution.status == JobStatus.COMPLETED
        assert "[TRANSFORM] ELT mode: 1 rules deferred to destination." in execution.logs
        batches = await fetch_all(session_factory, PipelineBatch)
        assert batches[0].rows == [{"name": "  raw  "}]
        assert batches[0].mode == "ELT"
        assert post_load.calls == [(execution.batch_id, steps)]

    @pytest.mark.asyncio
    async def test_redelivered_completed_job_is_skipped(self, make_pipeline, session_factory, db_session,
                                                        fake_connector):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)
        factory = fake_connector([{"id": 1}])
        worker = PipelineWorker(session_factory, connector_factory=factory)
        await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        job = await queue.claim("w1")
        await worker.process(job)
        await worker.process(job)

        assert len(factory.connector.queries) == 1
        assert len(await fetch_all(session_factory, PipelineBatch)) == 1


class TestFailedRuns:

    @pytest.mark.asyncio
    async def test_quality_gate_blocks_load(self, make_pipeline, run_pipeline, fake_connector,
                                            people_rows, session_factory):
        for row in people_rows[:10]:
            row["email"] = ""
        pipeline = await make_pipeline(quality_rules=[
            {"column": "email", "type": "not_null", "severity": "FAIL"},
        ])

        execution = await run_pipeline(pipeline, fake_connector(people_rows))

        assert execution.status == JobStatus.FAILED
        assert execution.error == "Quality check failed with 10 FAIL-severity violations."
        assert execution.completed_at is not None
        assert "[QUALITY] ... and 5 more." in execution.logs
        assert not any(line.startswith("[LOAD]") for line in execution.logs)
        assert not any(line.startswith("[RETRY]") for line in execution.logs)

        assert await fetch_all(session_factory, PipelineBatch) == []
        assert await fetch_all(session_factory, PipelineLease) == []
        jobs = await fetch_all(session_factory, PipelineJob)
        assert jobs[0].state == QueueState.DEAD

        async with session_factory() as db:
            refreshed = await db.get(Pipeline, pipeline.id)
        assert refreshed.last_status == RunStatus.FAILED

    @pytest.mark.asyncio
    async def test_transient_failure_retries_then_succeeds(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline()
        factory = fake_connector(SourceConnectionError("PostgreSQL unreachable"), [{"id": 1}, {"id": 2}])

        execution = await run_pipeline(pipeline, factory, runs=2)

        assert execution.status == JobStatus.COMPLETED
        assert execution.attempts == 2
        assert execution.rows_processed == 2
        assert "[ERROR] PostgreSQL unreachable" in execution.logs
        assert any(line.startswith("[RETRY] Attempt 1/3 failed") for line in execution.logs)
        assert sum(line.startswith("[START]") for line in execution.logs) == 2

    @pytest.mark.asyncio
    async def test_pending_between_attempts(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline()
        factory = fake_connector(SourceConnectionError("timeout"), [{"id": 1}])

        execution = await run_pipeline(pipeline, factory, runs=1)

        assert execution.status == JobStatus.PENDING
        assert execution.error == "timeout"

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_pipeline, run_pipeline, fake_connector, session_factory):
        pipeline = await make_pipeline()
        factory = fake_connector(SourceConnectionError("PostgreSQL unreachable"))

        execution = await run_pipeline(pipeline, factory, runs=3, max_attempts=2)

        assert execution.status == JobStatus.FAILED
        assert execution.attempts == 2
        assert len(factory.connector.queries) == 2
        jobs = await fetch_all(session_factory, PipelineJob)
        assert jobs[0].state == QueueState.DEAD
        assert await fetch_all(session_factory, PipelineLease) == []

    @pytest.mark.asyncio
    async def test_unsupported_source_fails_without_retry(self, make_pipeline, run_pipeline):
        from connectors import create_connector

        pipeline = await make_pipeline(source_type="oracle", source_config={"table": "people"})

        execution = await run_pipeline(pipeline, create_connector, runs=2)

        assert execution.status == JobStatus.FAILED
        assert execution.attempts == 1
        assert execution.error == "Unsupported data source type: oracle"

    @pytest.mark.asyncio
    async def test_invalid_table_name(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline(source_config={"table": "people; DROP TABLE x", "connection": {}})

        execution = await run_pipeline(pipeline, fake_connector([]))

        assert execution.status == JobStatus.FAILED
        assert "valid table name" in execution.error

    @pytest.mark.asyncio
    async def test_failed_run_frees_pipeline_for_next_trigger(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline(quality_rules=[{"column": "id", "type": "not_null", "severity": "FAIL"}])

        first = await run_pipeline(pipeline, fake_connector([{"id": None}]))
        second = await run_pipeline(pipeline, fake_connector([{"id": 7}]))

        assert first.status == JobStatus.FAILED
        assert second.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_connector_closed_when_query_fails(self, make_pipeline, run_pipeline, fake_connector):
        pipeline = await make_pipeline()
        factory = fake_connector(SourceConnectionError("connection reset"))

        await run_pipeline(pipeline, factory)

        assert factory.connector.opened == 1
        assert factory.connector.closed == 1


class TestDelivery:

    @pytest.mark.asyncio
    async def test_row_limit_caps_extract(self, make_pipeline, session_factory, db_session, fake_connector,
                                          people_rows):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)
        factory = fake_connector(people_rows)
        worker = PipelineWorker(session_factory, connector_factory=factory, max_rows=10)
        await trigger_pipeline_run(db_session, pipeline.id, queue=queue)

        execution = await worker.process(await queue.claim("w1"))

        assert execution.rows_processed == 10
        assert "[EXTRACT] Row limit reached; keeping first 10 rows." in execution.logs

    @pytest.mark.asyncio
    async def test_same_attempt_cannot_start_twice(self, make_pipeline, session_factory, db_session,
                                                   fake_connector):
        pipeline = await make_pipeline()
        queue = JobQueue(session_factory)
        factory = fake_connector([{"id": 1}])
        worker = PipelineWorker(session_factory, connector_factory=factory)
        execution = await trigger_pipeline_run(db_session, pipeline.id, queue=queue)
        job = await queue.claim("w1")

        # another worker already moved this attempt into PROCESSING
        async with session_factory() as db:
            await db.execute(
                update(JobExecution)
                .where(JobExecution.id == execution.id)
                .values(status=JobStatus.PROCESSING, attempts=1)
            )
            await db.commit()

        with pytest.raises(TransientJobError):
            await worker.process(job)
        assert factory.connector.queries == []

        taken_over = await worker.process(dataclasses.replace(job, attempts=2))

        assert taken_over.status == JobStatus.COMPLETED
        assert taken_over.attempts == 2
        assert factory.connector.queries == ["SELECT * FROM people"]
