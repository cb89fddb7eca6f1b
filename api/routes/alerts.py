"""
Alert evaluation trigger and alert history
"""

from typing import List
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.evaluator import AlertEvaluator
from api.dependencies import get_db, verify_cron_secret
from models.alert import Alert, AlertHistory
from schemas.api import AlertEvaluationResponse, AlertHistoryResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/alerts", tags=["Alerts"])


@router.api_route(
    "/evaluate",
    methods=["GET", "POST"],
    response_model=AlertEvaluationResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def evaluate_alerts(db: AsyncSession = Depends(get_db)):
    """
    Run one evaluation cycle over all active alerts.

    Meant for an external cron; protected by ``ALERT_CRON_SECRET`` when set.
    """
    return await AlertEvaluator(db).evaluate_all()


@router.get("/{alert_id}/history", response_model=List[AlertHistoryResponse])
async def alert_history(
    alert_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
):
    if await db.get(Alert, alert_id) is None:
        raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
    result = await db.execute(
        select(AlertHistory)
        .where(AlertHistory.alert_id == alert_id)
        .order_by(AlertHistory.id.desc())
        .limit(limit)
    )
    return result.scalars().all()
