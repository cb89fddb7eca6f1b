"""
Pipeline Worker - orchestrates Extract, Transform, Quality check, Load per job.

This module provides run orchestration with:
- Explicit execution state machine (PENDING -> PROCESSING -> COMPLETED | FAILED)
- Stage-tagged execution log persisted with the run
- Quality gate that blocks Load on FAIL-severity violations
- Idempotent load keyed by (pipeline_id, batch_id)
- Per-pipeline lease released at terminal state
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import re
import time

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors import create_connector
from core.config import settings
from core.database import async_session_maker, session_scope
from core.exceptions import (
    ConfigurationError,
    ETLException,
    QualityGateFailure,
    ResourceNotFoundError,
    TransientJobError,
    is_retryable,
)
from models.base import JobStatus, PipelineMode, RunStatus
from models.connection import Connection
from models.job_execution import JobExecution
from models.pipeline import Pipeline
from pipelines.job_queue import ClaimedJob, backoff_delay
from pipelines.loaders.batch_loader import BatchLoader, PostLoadTransformer, batch_id_for
from pipelines.quality.engine import QualityReport, parse_rules, validate_rows
from pipelines.transformers.engine import parse_steps, run_transformations
from pipelines.trigger import release_lease

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][\w]*(\.[A-Za-z_][\w]*)?$")


class ExecutionLog:
    """Ordered, stage-tagged log lines of one execution."""

    def __init__(self, execution_id: str, lines: Optional[List[str]] = None):
        self.execution_id = execution_id
        self.lines: List[str] = list(lines or [])

    def add(self, line: str) -> None:
        self.lines.append(line)
        logger.info(f"Execution {self.execution_id}: {line}")

    def write_to(self, execution: JobExecution) -> None:
        # JSON columns only detect reassignment
        execution.logs = list(self.lines)


class PipelineWorker:
    """
    Pipeline run orchestrator.

    Responsibilities:
    - Drive a JobExecution through its state machine
    - Extract through the connector registry
    - Transform (ETL mode), quality-check, load
    - Decide between retry (back to PENDING) and terminal FAILED
    - Record every error as a human-readable message, never a stack trace

    The worker re-raises every failure so the pool can settle the queue entry.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        connector_factory: Callable[..., Any] = create_connector,
        post_load: Optional[PostLoadTransformer] = None,
        max_rows: Optional[int] = None,
        logged_violations: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.connector_factory = connector_factory
        self.post_load = post_load
        self.max_rows = max_rows or settings.EXTRACT_MAX_ROWS
        self.logged_violations = logged_violations or settings.QUALITY_LOGGED_VIOLATIONS
        self.backoff_base = backoff_base

    async def process(self, job: ClaimedJob) -> JobExecution:
        """
        Run one claimed job to an outcome.

        Returns:
            The execution (COMPLETED, or untouched when already terminal)

        Raises:
            Whatever ended the run; unexpected exceptions arrive wrapped in
            TransientJobError
        """
        async with session_scope(self.session_factory) as db:
            execution = await db.get(JobExecution, job.execution_id)
            if execution is None:
                raise ResourceNotFoundError(
                    f"Execution not found: {job.execution_id}",
                    context={"execution_id": job.execution_id},
                )
            if JobStatus(execution.status).is_terminal:
                # redelivered after the run already finished
                logger.warning(f"Execution {execution.id} is already {execution.status}; skipping")
                return execution

            run_log = ExecutionLog(execution.id, execution.logs)
            started = time.perf_counter()

            # only one delivery may move the run into PROCESSING; a later
            # attempt may take over a run whose earlier claim expired
            claimed = await db.execute(
                update(JobExecution)
                .where(
                    JobExecution.id == execution.id,
                    or_(
                        JobExecution.status == JobStatus.PENDING,
                        and_(
                            JobExecution.status == JobStatus.PROCESSING,
                            JobExecution.attempts < job.attempts,
                        ),
                    ),
                )
                .values(
                    status=JobStatus.PROCESSING,
                    started_at=datetime.utcnow(),
                    completed_at=None,
                    attempts=job.attempts,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                raise TransientJobError(
                    f"Execution {execution.id} is already being processed",
                    context={"execution_id": execution.id, "attempt": job.attempts},
                )
            await db.commit()
            await db.refresh(execution)

            run_log.add(f"[START] Job {execution.id} started (attempt {job.attempts}/{job.max_attempts}).")
            run_log.write_to(execution)
            await db.commit()

            try:
                await self._run(db, execution, run_log, started)
            except Exception as e:
                error = e
                if not isinstance(e, ETLException):
                    error = TransientJobError(
                        f"Unexpected error: {e}",
                        context={"execution_id": execution.id, "pipeline_id": execution.pipeline_id},
                        original_exception=e,
                    )
                await self._record_failure(db, execution, job, run_log, error, started)
                if error is e:
                    raise
                raise error from e

            return execution

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run(self, db: AsyncSession, execution: JobExecution, run_log: ExecutionLog, started: float) -> None:
        pipeline = await db.get(Pipeline, execution.pipeline_id)
        if pipeline is None:
            raise ResourceNotFoundError(
                f"Pipeline not found: {execution.pipeline_id}",
                context={"pipeline_id": execution.pipeline_id},
            )

        steps = parse_steps(pipeline.transformation_steps)
        rules = parse_rules(pipeline.quality_rules)
        mode = PipelineMode(pipeline.mode)
        run_log.add(f"[INFO] Pipeline Mode: {mode.value}")

        # --------------------------------------------------
        # PHASE 1: EXTRACT
        # --------------------------------------------------
        rows = await self._extract(db, pipeline, run_log)

        # --------------------------------------------------
        # PHASE 2: TRANSFORM (ETL only)
        # --------------------------------------------------
        if mode == PipelineMode.ELT:
            run_log.add(f"[TRANSFORM] ELT mode: {len(steps)} rules deferred to destination.")
        elif steps:
            result = run_transformations(rows, steps)
            rows = result.rows
            run_log.add(f"[TRANSFORM] Applied {len(steps)} rules in {result.duration_ms:.0f}ms.")
            if result.rows_dropped:
                run_log.add(f"[TRANSFORM] Filter/Dedupe dropped {result.rows_dropped} rows.")
        else:
            run_log.add("[TRANSFORM] No rules defined. Skipping.")
        run_log.write_to(execution)

        # --------------------------------------------------
        # PHASE 3: QUALITY CHECK
        # --------------------------------------------------
        if rules:
            run_log.add(f"[QUALITY] Validating against {len(rules)} rules...")
            report = validate_rows(rows, rules)
            self._log_quality(run_log, report)
            if report.has_failures:
                raise QualityGateFailure(
                    f"Quality check failed with {report.fail_count} FAIL-severity violations.",
                    context={"fail_count": report.fail_count, "total_violations": report.total_violations},
                )
        run_log.write_to(execution)

        # --------------------------------------------------
        # PHASE 4: LOAD
        # --------------------------------------------------
        batch_id = batch_id_for(execution.id)
        loader = BatchLoader(db, post_load=self.post_load)
        if mode == PipelineMode.ELT:
            loaded = await loader.load_raw_and_hand_off(pipeline, execution.id, batch_id, rows)
            run_log.add(f"[LOAD] Loaded {loaded} raw rows into batch {batch_id}; handed off for transformation.")
        else:
            loaded = await loader.load(pipeline, execution.id, batch_id, rows)
            run_log.add(f"[LOAD] Loaded {loaded} rows into batch {batch_id}.")

        # --------------------------------------------------
        # PHASE 5: COMPLETE
        # --------------------------------------------------
        now = datetime.utcnow()
        execution.status = JobStatus.COMPLETED
        execution.completed_at = now
        execution.duration_ms = int((time.perf_counter() - started) * 1000)
        execution.rows_processed = loaded
        execution.batch_id = batch_id
        execution.error = None
        run_log.add("[SUCCESS] Job completed successfully.")
        run_log.write_to(execution)

        pipeline.last_run_at = now
        pipeline.last_status = RunStatus.SUCCESS
        await release_lease(db, pipeline.id, execution.id)
        await db.commit()

    async def _extract(self, db: AsyncSession, pipeline: Pipeline, run_log: ExecutionLog) -> List[Dict[str, Any]]:
        config = await self._source_config(db, pipeline)
        query = self._source_query(pipeline)

        async with self.connector_factory(config) as connector:
            result = await connector.execute_query(query, max_rows=self.max_rows)

        rows = list(result.rows)[: self.max_rows]
        if result.truncated:
            run_log.add(f"[EXTRACT] Row limit reached; keeping first {self.max_rows} rows.")
        run_log.add(f"[EXTRACT] Extracted {len(rows)} rows.")
        return rows

    async def _source_config(self, db: AsyncSession, pipeline: Pipeline):
        """Stored connection when ``connection_id`` is set, else inline connection fields."""
        source = dict(pipeline.source_config or {})
        connection_id = source.get("connection_id")
        if connection_id:
            connection = await db.get(Connection, connection_id)
            if connection is None:
                raise ResourceNotFoundError(
                    f"Connection not found: {connection_id}",
                    context={"pipeline_id": pipeline.id, "connection_id": connection_id},
                )
            return connection.to_config()

        config = dict(source.get("connection") or {})
        config.setdefault("type", pipeline.source_type)
        return config

    def _source_query(self, pipeline: Pipeline) -> str:
        source = pipeline.source_config or {}
        if source.get("query"):
            return source["query"]
        table = source.get("table")
        if not table or not _TABLE_NAME.match(table):
            raise ConfigurationError(
                f"Pipeline {pipeline.id} source_config needs a query or a valid table name",
                context={"pipeline_id": pipeline.id, "table": table},
            )
        return f"SELECT * FROM {table}"

    def _log_quality(self, run_log: ExecutionLog, report: QualityReport) -> None:
        if not report.total_violations:
            run_log.add("[QUALITY] All checks passed.")
            return

        run_log.add(f"[QUALITY] Found {report.total_violations} violations.")
        shown = report.violations[: self.logged_violations]
        for violation in shown:
            run_log.add(
                f"[QUALITY] [{violation.severity}] Row {violation.row_index}, "
                f"Col '{violation.column}': {violation.message}"
            )
        remaining = report.total_violations - len(shown)
        if remaining > 0:
            run_log.add(f"[QUALITY] ... and {remaining} more.")
        if not report.has_failures:
            run_log.add(f"[QUALITY] Proceeding with {report.warn_count} warnings.")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _record_failure(
        self,
        db: AsyncSession,
        execution: JobExecution,
        job: ClaimedJob,
        run_log: ExecutionLog,
        error: Exception,
        started: float,
    ) -> None:
        await db.rollback()
        await db.refresh(execution)

        message = error.message if isinstance(error, ETLException) else str(error)
        will_retry = is_retryable(error) and not job.is_last_attempt
        run_log.add(f"[ERROR] {message}")

        execution.error = message
        if will_retry:
            delay = backoff_delay(job.attempts, self.backoff_base)
            run_log.add(f"[RETRY] Attempt {job.attempts}/{job.max_attempts} failed; retrying in {delay:g}s.")
            execution.status = JobStatus.PENDING
        else:
            now = datetime.utcnow()
            execution.status = JobStatus.FAILED
            execution.completed_at = now
            execution.duration_ms = int((time.perf_counter() - started) * 1000)
            pipeline = await db.get(Pipeline, execution.pipeline_id)
            if pipeline is not None:
                await db.refresh(pipeline)
                pipeline.last_run_at = now
                pipeline.last_status = RunStatus.FAILED
            await release_lease(db, execution.pipeline_id, execution.id)
        run_log.write_to(execution)
        await db.commit()

        extra = {"error_context": error.to_dict()} if isinstance(error, ETLException) else {}
        logger.error(f"Execution {execution.id} failed: {message}", extra=extra)

    async def abandon(self, execution_id: str, reason: str) -> None:
        """Fail an execution whose queue entry died without a worker outcome."""
        async with session_scope(self.session_factory) as db:
            execution = await db.get(JobExecution, execution_id)
            if execution is None or JobStatus(execution.status).is_terminal:
                return
            run_log = ExecutionLog(execution.id, execution.logs)
            run_log.add(f"[ERROR] {reason}")
            now = datetime.utcnow()
            execution.status = JobStatus.FAILED
            execution.completed_at = now
            execution.error = reason
            run_log.write_to(execution)

            pipeline = await db.get(Pipeline, execution.pipeline_id)
            if pipeline is not None:
                pipeline.last_run_at = now
                pipeline.last_status = RunStatus.FAILED
            await release_lease(db, execution.pipeline_id, execution.id)
            await db.commit()
            logger.error(f"Execution {execution_id} abandoned: {reason}")
