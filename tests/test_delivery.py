"""Tests for alert delivery senders and the delivery dispatcher."""

import json
from typing import List, Optional

import httpx
import pytest
from sqlalchemy import select

from grc_monitor.alerting.application import AlertLifecycleService, DeliveryDispatcher, IDeliverySender
from grc_monitor.alerting.application.services import NO_SENDER_FOR_CHANNEL
from grc_monitor.alerting.domain import Alert, AlertRule
from grc_monitor.alerting.infrastructure import InAppSender, SlackSender, WebhookSender, build_default_senders
from grc_monitor.alerting.infrastructure.external import CircuitBreaker, CircuitState, alert_payload
from grc_monitor.alerting.infrastructure.models import AlertDeliveryModel
from grc_monitor.config import DeliveryStatus, Settings
from grc_monitor.core import DeliveryException
from tests.conftest import START, make_alert, make_rule, seed_alert, seed_rule

RULE_SLACK_URL = "https://hooks.slack.com/services/T000/B000/rule"
FALLBACK_SLACK_URL = "https://hooks.slack.com/services/T000/B000/fallback"


def mock_client(requests: List[httpx.Request], status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="ok")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def failing_client() -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def stored_deliveries(session_maker, alert_id: str) -> List[AlertDeliveryModel]:
    async with session_maker() as session:
        result = await session.execute(
            select(AlertDeliveryModel)
            .where(AlertDeliveryModel.alert_id == alert_id)
            .order_by(AlertDeliveryModel.channel)
        )
        return list(result.scalars().all())


class RecordingSender(IDeliverySender):
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.sent: List[tuple] = []
        self.closed = False

    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        self.sent.append((alert.id, rule.id if rule else None))
        if self.error:
            raise DeliveryException("slack", self.error)

    async def close(self) -> None:
        self.closed = True


class CrashingSender(IDeliverySender):
    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        raise RuntimeError("sender bug")

    async def close(self) -> None:
        pass


class CircuitBreakerTests:
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

        breaker.record_failure()
        assert breaker.allow_request()
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()

    def test_half_open_after_recovery_timeout(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)

        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()

    def test_failure_in_half_open_reopens(self) -> None:
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.recovery_timeout = 60
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_success_closes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()

        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED


class SlackSenderTests:
    @pytest.mark.asyncio()
    async def test_rule_url_wins_over_fallback(self) -> None:
        requests: List[httpx.Request] = []
        sender = SlackSender(fallback_webhook_url=FALLBACK_SLACK_URL, client=mock_client(requests))
        alert = make_alert(alert_number=7, sla_deadline=START, assigned_to="analyst")

        await sender.send(alert, make_rule(slack_webhook_url=RULE_SLACK_URL))

        [request] = requests
        assert str(request.url) == RULE_SLACK_URL
        body = json.loads(request.content)
        assert body["text"] == alert.title
        assert body["blocks"][0]["text"]["text"] == "Compliance alert #7"
        assert len(body["blocks"]) == 4
        await sender.close()

    @pytest.mark.asyncio()
    async def test_fallback_url_used_without_rule(self) -> None:
        requests: List[httpx.Request] = []
        sender = SlackSender(fallback_webhook_url=FALLBACK_SLACK_URL, client=mock_client(requests))

        await sender.send(make_alert(), None)

        assert str(requests[0].url) == FALLBACK_SLACK_URL

    @pytest.mark.asyncio()
    async def test_no_url_raises(self) -> None:
        sender = SlackSender(client=mock_client([]))

        with pytest.raises(DeliveryException):
            await sender.send(make_alert(), make_rule())

    @pytest.mark.asyncio()
    async def test_non_200_raises_and_counts_failure(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)
        sender = SlackSender(FALLBACK_SLACK_URL, client=mock_client([], status_code=500), circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(DeliveryException):
                await sender.send(make_alert(), None)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio()
    async def test_open_circuit_short_circuits(self) -> None:
        requests: List[httpx.Request] = []
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        sender = SlackSender(FALLBACK_SLACK_URL, client=mock_client(requests), circuit_breaker=breaker)

        with pytest.raises(DeliveryException, match="circuit breaker open"):
            await sender.send(make_alert(), None)

        assert requests == []

    @pytest.mark.asyncio()
    async def test_transport_error_raises(self) -> None:
        sender = SlackSender(FALLBACK_SLACK_URL, client=failing_client())

        with pytest.raises(DeliveryException, match="request failed"):
            await sender.send(make_alert(), None)


class WebhookSenderTests:
    @pytest.mark.asyncio()
    async def test_posts_payload_with_rule_headers(self) -> None:
        requests: List[httpx.Request] = []
        sender = WebhookSender(client=mock_client(requests, status_code=202))
        alert = make_alert(alert_number=3)
        rule = make_rule(
            webhook_url="https://hooks.example.com/grc",
            webhook_headers={"Authorization": "Bearer abc", "X-Custom-Team": "secops"},
        )

        await sender.send(alert, rule)

        [request] = requests
        assert request.headers["authorization"] == "Bearer abc"
        assert request.headers["x-custom-team"] == "secops"
        body = json.loads(request.content)
        assert body == json.loads(json.dumps(alert_payload(alert)))
        assert body["event"] == "alert.created"
        assert body["alert"]["alert_number"] == 3

    @pytest.mark.asyncio()
    async def test_missing_url_raises(self) -> None:
        sender = WebhookSender(client=mock_client([]))

        with pytest.raises(DeliveryException):
            await sender.send(make_alert(), make_rule())
        with pytest.raises(DeliveryException):
            await sender.send(make_alert(), None)

    @pytest.mark.asyncio()
    async def test_error_status_raises(self) -> None:
        sender = WebhookSender(client=mock_client([], status_code=503))

        with pytest.raises(DeliveryException, match="503"):
            await sender.send(make_alert(), make_rule(webhook_url="https://hooks.example.com/grc"))


class DefaultSendersTests:
    def test_every_channel_but_email_has_a_sender(self) -> None:
        senders = build_default_senders(Settings(slack_webhook_url=FALLBACK_SLACK_URL))

        assert sorted(senders) == ["in_app", "slack", "webhook"]
        assert isinstance(senders["in_app"], InAppSender)


class DeliveryDispatcherTests:
    @pytest.mark.asyncio()
    async def test_delivers_pending_intents(self, alert_repo, session_maker, clock) -> None:
        rule = await seed_rule(alert_repo, slack_webhook_url=RULE_SLACK_URL)
        alert = await seed_alert(alert_repo, alert_rule_id=rule.id, delivery_channels=["slack", "in_app"])
        slack = RecordingSender()
        dispatcher = DeliveryDispatcher(alert_repo, {"slack": slack, "in_app": InAppSender()}, clock)

        summary = await dispatcher.dispatch_pending()

        assert summary == {"delivered": 2, "retried": 0, "failed": 0}
        assert slack.sent == [(alert.id, rule.id)]
        rows = await stored_deliveries(session_maker, alert.id)
        assert [row.status for row in rows] == [DeliveryStatus.DELIVERED] * 2
        assert [row.attempts for row in rows] == [1, 1]
        assert rows[0].delivered_at == START

        assert await dispatcher.dispatch_pending() == {"delivered": 0, "retried": 0, "failed": 0}

    @pytest.mark.asyncio()
    async def test_channel_without_sender_fails_immediately(self, alert_repo, session_maker, clock) -> None:
        alert = await seed_alert(alert_repo, delivery_channels=["email"])
        dispatcher = DeliveryDispatcher(alert_repo, {"in_app": InAppSender()}, clock)

        summary = await dispatcher.dispatch_pending()

        assert summary["failed"] == 1
        [row] = await stored_deliveries(session_maker, alert.id)
        assert row.status == DeliveryStatus.FAILED
        assert row.last_error == NO_SENDER_FOR_CHANNEL

    @pytest.mark.asyncio()
    async def test_failed_send_retried_until_max_attempts(self, alert_repo, session_maker, clock) -> None:
        alert = await seed_alert(alert_repo, delivery_channels=["slack"])
        slack = RecordingSender(error="webhook returned 500")
        dispatcher = DeliveryDispatcher(alert_repo, {"slack": slack}, clock, max_attempts=3)

        summaries = [await dispatcher.dispatch_pending() for _ in range(4)]

        assert [s["retried"] for s in summaries] == [1, 1, 0, 0]
        assert [s["failed"] for s in summaries] == [0, 0, 1, 0]
        [row] = await stored_deliveries(session_maker, alert.id)
        assert row.status == DeliveryStatus.FAILED
        assert row.attempts == 3
        assert "webhook returned 500" in row.last_error
        assert len(slack.sent) == 3

    @pytest.mark.asyncio()
    async def test_close_closes_senders(self, alert_repo, clock) -> None:
        slack = RecordingSender()
        dispatcher = DeliveryDispatcher(alert_repo, {"slack": slack}, clock)

        await dispatcher.close()

        assert slack.closed is True

    @pytest.mark.asyncio()
    async def test_unencodable_webhook_header_does_not_block_later_intents(
        self, alert_repo, session_maker, clock
    ) -> None:
        # Stored before header values were restricted to ASCII
        rule = await seed_rule(
            alert_repo,
            delivery_channels=["webhook"],
            webhook_url="https://hooks.example.com/grc",
            webhook_headers={"X-Custom-Team": "équipe"},
        )
        webhook_alert = await seed_alert(alert_repo, alert_rule_id=rule.id, delivery_channels=["webhook"])
        in_app_alert = await seed_alert(alert_repo, delivery_channels=["in_app"])
        requests: List[httpx.Request] = []
        dispatcher = DeliveryDispatcher(
            alert_repo,
            {"webhook": WebhookSender(client=mock_client(requests)), "in_app": InAppSender()},
            clock,
        )

        summary = await dispatcher.dispatch_pending()

        assert summary == {"delivered": 1, "retried": 1, "failed": 0}
        assert requests == []
        [webhook_row] = await stored_deliveries(session_maker, webhook_alert.id)
        assert webhook_row.status == DeliveryStatus.PENDING
        assert webhook_row.attempts == 1
        assert "UnicodeEncodeError" in webhook_row.last_error
        [in_app_row] = await stored_deliveries(session_maker, in_app_alert.id)
        assert in_app_row.status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio()
    async def test_crashing_sender_counted_as_failed_attempt(self, alert_repo, session_maker, clock) -> None:
        alert = await seed_alert(alert_repo, delivery_channels=["slack"])
        dispatcher = DeliveryDispatcher(alert_repo, {"slack": CrashingSender()}, clock, max_attempts=2)

        first = await dispatcher.dispatch_pending()
        second = await dispatcher.dispatch_pending()

        assert first == {"delivered": 0, "retried": 1, "failed": 0}
        assert second == {"delivered": 0, "retried": 0, "failed": 1}
        [row] = await stored_deliveries(session_maker, alert.id)
        assert row.status == DeliveryStatus.FAILED
        assert row.attempts == 2
        assert row.last_error == "RuntimeError: sender bug"

    @pytest.mark.asyncio()
    async def test_redelivery_restores_a_failed_intent(self, alert_repo, session_maker, clock) -> None:
        alert = await seed_alert(alert_repo, delivery_channels=["slack"])
        slack = RecordingSender(error="webhook returned 500")
        dispatcher = DeliveryDispatcher(alert_repo, {"slack": slack}, clock, max_attempts=1)
        await dispatcher.dispatch_pending()
        [row] = await stored_deliveries(session_maker, alert.id)
        assert row.status == DeliveryStatus.FAILED

        await AlertLifecycleService(alert_repo, clock).redeliver(alert.tenant_id, alert.id)
        slack.error = None
        summary = await dispatcher.dispatch_pending()

        assert summary == {"delivered": 1, "retried": 0, "failed": 0}
        [row] = await stored_deliveries(session_maker, alert.id)
        assert row.status == DeliveryStatus.DELIVERED
        assert row.attempts == 1
        assert row.last_error is None
