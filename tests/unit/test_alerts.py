"""
Unit tests for alert evaluation and notification
"""

from datetime import datetime, timedelta
import json

import httpx
import pytest
from sqlalchemy import select

from alerts.evaluator import AlertEvaluator, compare, to_number
from alerts.notifier import AlertNotifier, webhook_headers, webhook_payload
from core.exceptions import AlertEvaluationError, SourceConnectionError
from models import Alert, AlertHistory, Connection, SavedQuery
from models.base import AlertStatus


@pytest.fixture
def make_alert(db_session):
    """Insert connection -> saved query -> alert"""
    created = datetime.utcnow()

    async def build(name="Revenue", threshold=100.0, operator=">", with_query=True, offset=0, **overrides):
        query = None
        if with_query:
            connection = Connection(name="warehouse", type="postgres", host="db", database="dw", username="u")
            query = SavedQuery(name="Daily revenue", connection=connection, sql="SELECT SUM(amount) AS total FROM orders")
            db_session.add_all([connection, query])
        values = dict(
            name=name,
            query=query,
            column="total",
            operator=operator,
            threshold=threshold,
            is_active=True,
            created_at=created + timedelta(seconds=offset),
        )
        values.update(overrides)
        alert = Alert(**values)
        db_session.add(alert)
        await db_session.commit()
        return alert

    return build


class TestComparison:

    @pytest.mark.parametrize("value,op,threshold,expected", [
        (120, ">", 100, True),
        (80, ">", 100, False),
        (100, ">=", 100, True),
        (99, "<", 100, True),
        (100, "<=", 100, True),
        (5, "=", 5, True),
        (5, "!=", 5, False),
    ])
    def test_operators(self, value, op, threshold, expected):
        assert compare(value, op, threshold) is expected

    def test_unknown_operator(self):
        with pytest.raises(AlertEvaluationError):
            compare(1, "~", 1)

    @pytest.mark.parametrize("raw", [None, True, "n/a", [1]])
    def test_non_numeric_values_rejected(self, raw):
        with pytest.raises(AlertEvaluationError):
            to_number(raw, "total")

    def test_numeric_strings_accepted(self):
        assert to_number("12.5", "total") == 12.5


class TestAlertEvaluator:

    async def test_triggered_and_ok(self, db_session, make_alert, fake_connector):
        high = await make_alert(name="High", offset=0)
        low = await make_alert(name="Low", offset=1)
        factory = fake_connector([{"total": 120}], [{"total": 80}])

        response = await AlertEvaluator(db_session, connector_factory=factory).evaluate_all()

        assert response.evaluated == 2
        assert response.triggered == 1
        assert response.errors == 0
        by_name = {item.name: item for item in response.results}
        assert by_name["High"].status == AlertStatus.TRIGGERED
        assert by_name["High"].value == 120
        assert by_name["Low"].status == AlertStatus.OK
        assert high.last_status == AlertStatus.TRIGGERED
        assert low.last_status == AlertStatus.OK
        assert high.last_run_at is not None

    async def test_one_history_row_per_evaluation(self, db_session, make_alert, fake_connector):
        alert = await make_alert()
        evaluator = AlertEvaluator(db_session, connector_factory=fake_connector([{"total": 150}]))

        await evaluator.evaluate_all()
        await evaluator.evaluate_all()

        history = (await db_session.execute(
            select(AlertHistory).where(AlertHistory.alert_id == alert.id)
        )).scalars().all()
        assert len(history) == 2
        assert all(h.status == AlertStatus.TRIGGERED and h.message == "Threshold met" for h in history)

    async def test_connector_failure_recorded_as_error(self, db_session, make_alert, fake_connector):
        alert = await make_alert()
        factory = fake_connector(SourceConnectionError("PostgreSQL unreachable"))

        response = await AlertEvaluator(db_session, connector_factory=factory).evaluate_all()

        assert response.errors == 1
        item = response.results[0]
        assert item.status == AlertStatus.ERROR
        assert item.value is None
        assert item.message == "PostgreSQL unreachable"
        assert alert.last_status == AlertStatus.ERROR

    async def test_empty_result_is_error(self, db_session, make_alert, fake_connector):
        await make_alert()
        response = await AlertEvaluator(db_session, connector_factory=fake_connector([])).evaluate_all()
        assert response.results[0].message == "No data returned from query"

    async def test_missing_query_is_error(self, db_session, make_alert, fake_connector):
        await make_alert(with_query=False)
        response = await AlertEvaluator(db_session, connector_factory=fake_connector([{"total": 1}])).evaluate_all()
        assert response.results[0].status == AlertStatus.ERROR
        assert response.results[0].message == "Associated query not found"

    async def test_failure_does_not_stop_other_alerts(self, db_session, make_alert, fake_connector):
        await make_alert(name="Broken", offset=0)
        await make_alert(name="Fine", offset=1)
        factory = fake_connector(SourceConnectionError("timeout"), [{"total": 500}])

        response = await AlertEvaluator(db_session, connector_factory=factory).evaluate_all()

        assert [i.status for i in response.results] == [AlertStatus.ERROR, AlertStatus.TRIGGERED]

    async def test_inactive_alerts_skipped(self, db_session, make_alert, fake_connector):
        await make_alert(is_active=False)
        response = await AlertEvaluator(db_session, connector_factory=fake_connector([{"total": 1}])).evaluate_all()
        assert response.evaluated == 0

    async def test_trigger_dispatches_webhook(self, db_session, make_alert, fake_connector):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200)

        alert = await make_alert(webhook_url="https://hooks.example.com/alert", webhook_headers={"X-Token": "abc"})
        notifier = AlertNotifier(api_key="", transport=httpx.MockTransport(handler))

        await AlertEvaluator(
            db_session, notifier=notifier, connector_factory=fake_connector([{"total": 120}])
        ).evaluate_all()

        assert len(sent) == 1
        body = json.loads(sent[0].content)
        assert body["event"] == "alert_triggered"
        assert body["alertId"] == alert.id
        assert body["condition"] == {"column": "total", "operator": ">", "threshold": 100.0, "actualValue": 120.0}
        assert body["query"]["name"] == "Daily revenue"
        assert sent[0].headers["X-Token"] == "abc"
        assert sent[0].headers["Content-Type"] == "application/json"


class TestNotifier:

    @pytest.fixture
    def alert(self):
        return Alert(
            id="alert-1",
            name="Revenue",
            query_id="q-1",
            column="total",
            operator=">",
            threshold=100.0,
            email="ops@example.com, cfo@example.com",
            webhook_url="https://hooks.example.com/alert",
        )

    def test_webhook_payload_shape(self, alert):
        payload = webhook_payload(alert, 120.0, timestamp=datetime(2024, 1, 15, 10, 0))

        assert payload["timestamp"] == "2024-01-15T10:00:00Z"
        assert payload["alertName"] == "Revenue"
        assert payload["query"] == {"id": "q-1", "name": None}

    def test_webhook_headers_keep_explicit_content_type(self):
        assert webhook_headers({"content-type": "text/plain"}) == {"content-type": "text/plain"}
        assert webhook_headers(None) == {"Content-Type": "application/json"}

    async def test_email_without_key_is_mocked(self, alert):
        requests = []
        notifier = AlertNotifier(api_key="", transport=httpx.MockTransport(lambda r: requests.append(r)))

        assert await notifier.send_email(alert, 120.0) is True
        assert requests == []

    async def test_email_through_resend(self, alert):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"id": "email-1"})

        notifier = AlertNotifier(api_key="re_123", transport=httpx.MockTransport(handler))

        assert await notifier.send_email(alert, 120.0) is True
        body = json.loads(requests[0].content)
        assert requests[0].headers["Authorization"] == "Bearer re_123"
        assert body["to"] == ["ops@example.com", "cfo@example.com"]
        assert body["subject"] == "[Alert] Revenue Triggered"

    async def test_delivery_failures_return_false(self, alert):
        notifier = AlertNotifier(api_key="re_123", transport=httpx.MockTransport(lambda r: httpx.Response(500)))

        result = await notifier.notify(alert, 120.0)

        assert result == {"email": False, "webhook": False}

    async def test_nothing_configured(self):
        bare = Alert(id="a", name="x", column="c", operator=">", threshold=1.0)
        assert await AlertNotifier(api_key="").notify(bare, 2.0) == {"email": False, "webhook": False}
