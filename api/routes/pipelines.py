"""
Pipeline CRUD, run-now trigger and execution history
"""

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db, get_queue
from connectors.registry import is_supported, supported_types
from core.exceptions import PipelineBusyError, ResourceNotFoundError
from models.job_execution import JobExecution
from models.pipeline import Pipeline
from pipelines.job_queue import JobQueue
from pipelines.trigger import trigger_pipeline_run
from schemas.pipeline import JobExecutionResponse, PipelineCreate, PipelineResponse, PipelineUpdate

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


def _check_source_type(source_type: str) -> None:
    if not is_supported(source_type):
        raise HTTPException(
            status_code=422,
            detail=f"Unsupported source_type '{source_type}'; supported: {', '.join(supported_types())}",
        )


def _serialize_steps(steps) -> list:
    return [step.dict(exclude_none=True) for step in steps]


def _serialize_rules(rules) -> list:
    return [rule.dict(by_alias=True, exclude_none=True) for rule in rules]


async def _get_pipeline(db: AsyncSession, pipeline_id: str) -> Pipeline:
    pipeline = await db.get(Pipeline, pipeline_id)
    if pipeline is None:
        raise HTTPException(status_code=404, detail=f"Pipeline not found: {pipeline_id}")
    return pipeline


@router.get("", response_model=List[PipelineResponse])
async def list_pipelines(
    workspace_id: Optional[str] = Query(None, description="Filter by workspace"),
    db: AsyncSession = Depends(get_db),
):
    query = select(Pipeline).order_by(Pipeline.created_at.desc())
    if workspace_id:
        query = query.where(Pipeline.workspace_id == workspace_id)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("", response_model=PipelineResponse, status_code=201)
async def create_pipeline(body: PipelineCreate, db: AsyncSession = Depends(get_db)):
    _check_source_type(body.source_type)
    pipeline = Pipeline(
        name=body.name,
        description=body.description,
        workspace_id=body.workspace_id,
        source_type=body.source_type.lower(),
        source_config=body.source_config,
        destination_type=body.destination_type,
        destination_config=body.destination_config,
        mode=body.mode,
        transformation_steps=_serialize_steps(body.transformation_steps),
        quality_rules=_serialize_rules(body.quality_rules),
        schedule_cron=body.schedule_cron,
        is_active=body.is_active,
    )
    db.add(pipeline)
    await db.commit()
    await db.refresh(pipeline)
    logger.info(f"Created pipeline {pipeline.id} ({pipeline.name})")
    return pipeline


@router.get("/{pipeline_id}", response_model=PipelineResponse)
async def get_pipeline(pipeline_id: str, db: AsyncSession = Depends(get_db)):
    return await _get_pipeline(db, pipeline_id)


@router.patch("/{pipeline_id}", response_model=PipelineResponse)
async def update_pipeline(pipeline_id: str, body: PipelineUpdate, db: AsyncSession = Depends(get_db)):
    pipeline = await _get_pipeline(db, pipeline_id)
    changes = body.dict(exclude_unset=True)

    if "source_type" in changes:
        _check_source_type(changes["source_type"])
        changes["source_type"] = changes["source_type"].lower()
    if "source_config" in changes:
        source_config = changes["source_config"] or {}
        if not (source_config.get("query") or source_config.get("table")):
            raise HTTPException(status_code=422, detail="source_config requires 'query' or 'table'")
    if body.transformation_steps is not None:
        changes["transformation_steps"] = _serialize_steps(body.transformation_steps)
    if body.quality_rules is not None:
        changes["quality_rules"] = _serialize_rules(body.quality_rules)

    for field, value in changes.items():
        setattr(pipeline, field, value)
    await db.commit()
    await db.refresh(pipeline)
    return pipeline


@router.delete("/{pipeline_id}", status_code=204)
async def delete_pipeline(pipeline_id: str, db: AsyncSession = Depends(get_db)):
    pipeline = await _get_pipeline(db, pipeline_id)
    await db.delete(pipeline)
    await db.commit()
    logger.info(f"Deleted pipeline {pipeline_id}")
    return Response(status_code=204)


@router.post("/{pipeline_id}/run", response_model=JobExecutionResponse, status_code=201)
async def run_pipeline(
    pipeline_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    """
    Queue a run now.

    - 201 with the PENDING execution
    - 404 unknown pipeline
    - 409 another run of this pipeline is pending or in flight
    """
    request_id = getattr(request.state, "request_id", "-")
    try:
        execution = await trigger_pipeline_run(db, pipeline_id, trigger="manual", queue=queue)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except PipelineBusyError as e:
        logger.info(f"[{request_id}] Run rejected for busy pipeline {pipeline_id}")
        raise HTTPException(status_code=409, detail=e.message)
    return execution


@router.get("/{pipeline_id}/executions", response_model=List[JobExecutionResponse])
async def list_executions(
    pipeline_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    await _get_pipeline(db, pipeline_id)
    result = await db.execute(
        select(JobExecution)
        .where(JobExecution.pipeline_id == pipeline_id)
        .order_by(JobExecution.created_at.desc())
        .limit(limit)
    )
    return result.scalars().all()
