"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from api.routes import alerts, connections, executions, health, pipelines
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from pipelines.job_queue import JobQueue, WorkerPool
from pipelines.scheduler import PipelineScheduler
from pipelines.worker import PipelineWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the worker pool and scheduler (when enabled) for the app's lifetime"""
    setup_logging()
    logger.info("Starting Pipeline Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    queue = JobQueue()
    worker = PipelineWorker()
    pool = WorkerPool(queue, worker)
    scheduler = PipelineScheduler(queue=queue, worker=worker)

    if settings.WORKER_ENABLED:
        pool.start()
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    app.state.worker_pool = pool
    app.state.scheduler = scheduler

    yield

    logger.info("Shutting down Pipeline Backend API")
    scheduler.stop()
    await pool.stop()


# Create FastAPI app
app = FastAPI(
    title="Pipeline Backend API",
    description="Data pipeline execution: connectors, transformation, quality gates, job queue and alerts",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(pipelines.router)
app.include_router(executions.router)
app.include_router(connections.router)
app.include_router(alerts.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Pipeline Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "pipelines": "/pipelines",
            "executions": "/executions/{id}",
            "connections": "/connections/test",
            "alerts": "/alerts/evaluate",
        }
    }
