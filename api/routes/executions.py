"""
Execution lookup
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from models.job_execution import JobExecution
from schemas.pipeline import JobExecutionResponse

router = APIRouter(prefix="/executions", tags=["Executions"])


@router.get("/{execution_id}", response_model=JobExecutionResponse)
async def get_execution(execution_id: str, db: AsyncSession = Depends(get_db)):
    """Execution state, counters and the stage-tagged log"""
    execution = await db.get(JobExecution, execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    return execution
