"""
Alert Evaluator - periodic threshold checks over saved queries.

Each cycle re-runs every active alert's saved query through the connector
registry, reads one numeric value and compares it to the alert threshold.
Every evaluation, including failed ones, appends exactly one AlertHistory row.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import operator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from alerts.notifier import AlertNotifier
from connectors import create_connector
from core.exceptions import AlertEvaluationError, ETLException
from models.alert import Alert, AlertHistory
from models.base import AlertStatus
from models.connection import SavedQuery
from schemas.api import AlertEvaluationItem, AlertEvaluationResponse

logger = logging.getLogger(__name__)

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "=": operator.eq,
    "!=": operator.ne,
}


def compare(value: float, op: str, threshold: float) -> bool:
    """Apply an alert operator; unknown operators raise AlertEvaluationError."""
    if op not in OPERATORS:
        raise AlertEvaluationError(
            f"Unsupported operator: {op}",
            context={"operator": op, "supported": list(OPERATORS)},
        )
    return OPERATORS[op](value, threshold)


def to_number(raw: Any, column: str) -> float:
    if isinstance(raw, bool) or raw is None:
        raise AlertEvaluationError(f"Column '{column}' is not a number: {raw}", context={"column": column})
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise AlertEvaluationError(f"Column '{column}' is not a number: {raw}", context={"column": column})


class AlertEvaluator:
    """
    Evaluates alerts and records their outcomes.

    Responsibilities:
    - Execute each alert's saved query via a connector
    - Classify OK / TRIGGERED / ERROR
    - Dispatch notifications on TRIGGERED
    - Append one history row and update last_run_at/last_status per alert

    One alert failing never stops the others.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        notifier: Optional[AlertNotifier] = None,
        connector_factory: Callable[..., Any] = create_connector,
    ):
        self.db = db_session
        self.notifier = notifier or AlertNotifier()
        self.connector_factory = connector_factory

    async def evaluate_all(self) -> AlertEvaluationResponse:
        result = await self.db.execute(
            select(Alert)
            .where(Alert.is_active.is_(True))
            .options(selectinload(Alert.query).selectinload(SavedQuery.connection))
            .order_by(Alert.created_at)
        )
        alerts = result.scalars().all()
        logger.info(f"Evaluating {len(alerts)} active alerts")

        items: List[AlertEvaluationItem] = []
        for alert in alerts:
            items.append(await self.evaluate(alert))

        response = AlertEvaluationResponse(
            evaluated=len(items),
            triggered=sum(1 for i in items if i.status == AlertStatus.TRIGGERED.value),
            errors=sum(1 for i in items if i.status == AlertStatus.ERROR.value),
            results=items,
        )
        logger.info(
            f"Alert cycle done: {response.evaluated} evaluated, "
            f"{response.triggered} triggered, {response.errors} errors"
        )
        return response

    async def evaluate(self, alert: Alert) -> AlertEvaluationItem:
        """Evaluate one alert and persist its outcome. Never raises for evaluation errors."""
        value: Optional[float] = None
        try:
            value = await self._measure(alert)
            triggered = compare(value, alert.operator, alert.threshold)
        except Exception as e:
            error = e if isinstance(e, ETLException) else AlertEvaluationError(
                str(e), context={"alert_id": alert.id}, original_exception=e
            )
            logger.warning(f"Alert {alert.id} evaluation failed: {error.message}")
            return await self._record(alert, AlertStatus.ERROR, None, error.message)

        logger.info(f"Alert {alert.name}: {value} {alert.operator} {alert.threshold} -> {triggered}")
        if triggered:
            await self.notifier.notify(alert, value)
            return await self._record(alert, AlertStatus.TRIGGERED, value, "Threshold met")
        return await self._record(alert, AlertStatus.OK, value, "Within limits")

    async def _measure(self, alert: Alert) -> float:
        query = alert.query
        if query is None:
            raise AlertEvaluationError("Associated query not found", context={"alert_id": alert.id})
        if query.connection is None:
            raise AlertEvaluationError("Associated connection not found", context={"alert_id": alert.id})

        async with self.connector_factory(query.connection.to_config()) as connector:
            result = await connector.execute_query(query.sql)

        if not result.rows:
            raise AlertEvaluationError("No data returned from query", context={"alert_id": alert.id})
        return to_number(result.rows[0].get(alert.column), alert.column)

    async def _record(
        self, alert: Alert, status: AlertStatus, value: Optional[float], message: str
    ) -> AlertEvaluationItem:
        now = datetime.utcnow()
        self.db.add(AlertHistory(alert_id=alert.id, status=status, value=value, message=message, created_at=now))
        alert.last_run_at = now
        alert.last_status = status
        await self.db.commit()
        return AlertEvaluationItem(alert_id=alert.id, name=alert.name, status=status, value=value, message=message)
