"""
Run the worker pool and scheduler without the HTTP API
"""

import asyncio
import logging
import signal
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from pipelines.job_queue import JobQueue, WorkerPool
from pipelines.scheduler import PipelineScheduler
from pipelines.worker import PipelineWorker

logger = logging.getLogger(__name__)


async def run_worker():
    """Drain the queue until SIGINT/SIGTERM"""
    queue = JobQueue()
    worker = PipelineWorker()
    pool = WorkerPool(queue, worker)
    scheduler = PipelineScheduler(queue=queue, worker=worker)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    pool.start()
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    logger.info(f"Worker running with concurrency {pool.concurrency}")

    try:
        await stop.wait()
    finally:
        scheduler.stop()
        await pool.stop()


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
        sys.exit(0)
