"""
Alert notifications: email through the Resend HTTP API and JSON webhooks.

Notification failures are logged and swallowed; they never change the
outcome of an alert evaluation.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

import httpx

from core.config import settings
from core.security import redact
from models.alert import Alert

logger = logging.getLogger(__name__)


def webhook_payload(alert: Alert, value: float, timestamp: Optional[datetime] = None) -> Dict[str, Any]:
    """Body POSTed to an alert's webhook when it triggers."""
    query = alert.query
    return {
        "event": "alert_triggered",
        "alertId": alert.id,
        "alertName": alert.name,
        "timestamp": (timestamp or datetime.utcnow()).isoformat() + "Z",
        "condition": {
            "column": alert.column,
            "operator": alert.operator,
            "threshold": alert.threshold,
            "actualValue": value,
        },
        "query": {
            "id": query.id if query is not None else alert.query_id,
            "name": query.name if query is not None else None,
        },
    }


def webhook_headers(configured: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Configured headers, with Content-Type defaulted to JSON."""
    headers = {str(k): str(v) for k, v in (configured or {}).items()}
    if not any(k.lower() == "content-type" for k in headers):
        headers["Content-Type"] = "application/json"
    return headers


def _recipients(email: Optional[str]) -> List[str]:
    return [address.strip() for address in (email or "").split(",") if address.strip()]


class AlertNotifier:
    """
    Dispatches TRIGGERED alerts.

    Email goes through Resend when ``RESEND_API_KEY`` is configured and is
    only logged otherwise.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        email_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.sender = sender or settings.ALERT_EMAIL_FROM
        self.email_url = email_url or settings.RESEND_API_URL
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def notify(self, alert: Alert, value: float) -> Dict[str, bool]:
        """Send every configured notification; returns which ones went out."""
        return {
            "email": await self.send_email(alert, value),
            "webhook": await self.send_webhook(alert, value),
        }

    async def send_email(self, alert: Alert, value: float) -> bool:
        recipients = _recipients(alert.email)
        if not recipients:
            return False

        subject = f"[Alert] {alert.name} Triggered"
        if not self.api_key:
            logger.info(f"[MOCK EMAIL] {subject} to {', '.join(recipients)} (value={value})")
            return True

        query_name = alert.query.name if alert.query is not None else "-"
        html = (
            f"<h1>Alert Triggered: {alert.name}</h1>"
            f"<p><strong>Condition:</strong> {alert.column} {alert.operator} {alert.threshold}</p>"
            f"<p><strong>Current Value:</strong> {value}</p>"
            f"<p><strong>Query:</strong> {query_name}</p>"
            f"<hr/><p>Run at: {datetime.utcnow().isoformat()}Z</p>"
        )
        try:
            async with self._client() as client:
                response = await client.post(
                    self.email_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.sender, "to": recipients, "subject": subject, "html": html},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Alert {alert.id}: email delivery failed: {redact(str(e), [self.api_key])}")
            return False

        logger.info(f"Alert {alert.id}: email sent to {len(recipients)} recipients")
        return True

    async def send_webhook(self, alert: Alert, value: float) -> bool:
        if not alert.webhook_url:
            return False

        try:
            async with self._client() as client:
                response = await client.post(
                    alert.webhook_url,
                    headers=webhook_headers(alert.webhook_headers),
                    json=webhook_payload(alert, value),
                )
        except httpx.HTTPError as e:
            logger.error(f"Alert {alert.id}: webhook execution error: {e}")
            return False

        if response.is_error:
            logger.error(f"Alert {alert.id}: webhook failed: {response.status_code} {response.reason_phrase}")
            return False
        return True
