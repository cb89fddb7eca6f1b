"""
Pipeline execution components.

Modules:
    worker: Orchestrates extract -> transform -> quality check -> load per job
    job_queue: Database-backed retryable queue and the asyncio worker pool
    trigger: "Run now" entry point (execution row + lease + queue entry)
    scheduler: APScheduler cron triggers and queue maintenance

Subpackages:
    transformers: Ordered column-level transformation engine
    quality: Rule-based data quality engine
    loaders: Idempotent batch upsert and the ELT hand-off

Architecture:
    A trigger (manual or cron) creates a PENDING execution, takes the
    pipeline lease and enqueues a job. A pool worker claims the job and
    drives the execution:

    1. Extract - connector from the registry, bounded batch
    2. Transform - ETL mode only
    3. Quality - FAIL-severity violations abort before Load
    4. Load - upsert keyed by (pipeline_id, batch_id)

    Retry-eligible failures go back to PENDING and the queue re-delivers
    them with exponential backoff; everything else ends FAILED.

Usage:
    from pipelines.job_queue import JobQueue, WorkerPool
    from pipelines.worker import PipelineWorker

    pool = WorkerPool(JobQueue(), PipelineWorker())
    pool.start()
"""

