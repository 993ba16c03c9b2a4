"""
Alerting External Service Integrations
======================================

Outbound delivery channels for alerts:
- Slack incoming webhook with circuit breaker
- Generic JSON webhook
- In-app (persistence only)
"""

import time
from typing import Any, Dict, Optional

import httpx

from grc_monitor.alerting.application.services import IDeliverySender
from grc_monitor.alerting.domain import Alert, AlertRule
from grc_monitor.config import DeliveryChannel, Settings
from grc_monitor.core import DeliveryException
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_SEVERITY_EMOJI = {
    "critical": ":red_circle:",
    "high": ":large_orange_circle:",
    "medium": ":large_yellow_circle:",
    "low": ":white_circle:",
}


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for preventing cascade failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._opened_at = time.monotonic()
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


def alert_payload(alert: Alert) -> Dict[str, Any]:
    """JSON body shared by the webhook channel."""
    return {
        "event": "alert.created",
        "alert": {
            "id": alert.id,
            "tenant_id": alert.tenant_id,
            "alert_number": alert.alert_number,
            "title": alert.title,
            "description": alert.description,
            "severity": alert.severity,
            "status": alert.status,
            "control_id": alert.control_id,
            "test_id": alert.test_id,
            "test_result_id": alert.test_result_id,
            "alert_rule_id": alert.alert_rule_id,
            "assigned_to": alert.assigned_to,
            "sla_deadline": alert.sla_deadline.isoformat() if alert.sla_deadline else None,
            "created_at": alert.created_at.isoformat() if alert.created_at else None,
        },
    }


class SlackSender(IDeliverySender):
    """
    Slack incoming-webhook sender with circuit breaker.

    The rule's own webhook URL wins over the configured fallback. Retries are
    left to the delivery dispatcher, which keeps the intent pending.
    """

    def __init__(
        self,
        fallback_webhook_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._fallback_webhook_url = fallback_webhook_url
        self._timeout_seconds = timeout_seconds
        self._http_client = client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(failure_threshold=5, recovery_timeout=60)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    @staticmethod
    def _build_message(alert: Alert) -> Dict[str, Any]:
        """Build Slack Block Kit message."""
        emoji = _SEVERITY_EMOJI.get(alert.severity, ":warning:")
        number = f"#{alert.alert_number} " if alert.alert_number is not None else ""

        fields = [
            {"type": "mrkdwn", "text": f"*Severity:*\n{alert.severity.title()}"},
            {"type": "mrkdwn", "text": f"*Control:*\n{alert.control_id}"},
            {"type": "mrkdwn", "text": f"*Status:*\n{alert.status}"},
        ]
        if alert.assigned_to:
            fields.append({"type": "mrkdwn", "text": f"*Assigned to:*\n{alert.assigned_to}"})

        blocks = [
            {
                "type": "header",
                "text": {"type": "plain_text", "text": f"Compliance alert {number}".strip(), "emoji": True}
            },
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": f"{emoji} *{alert.title}*"}
            },
            {"type": "section", "fields": fields},
        ]
        if alert.sla_deadline:
            blocks.append({
                "type": "context",
                "elements": [
                    {"type": "mrkdwn", "text": f"SLA deadline: {alert.sla_deadline.isoformat()}"}
                ]
            })

        return {"text": alert.title, "blocks": blocks}

    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        url = (rule.slack_webhook_url if rule else None) or self._fallback_webhook_url
        if not url:
            raise DeliveryException(DeliveryChannel.SLACK, "no Slack webhook URL configured")

        if not self._circuit_breaker.allow_request():
            raise DeliveryException(DeliveryChannel.SLACK, "circuit breaker open")

        client = await self._get_client()
        try:
            response = await client.post(url, json=self._build_message(alert))
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise DeliveryException(DeliveryChannel.SLACK, f"request failed: {e}") from e

        if response.status_code != 200:
            self._circuit_breaker.record_failure()
            raise DeliveryException(
                DeliveryChannel.SLACK, f"webhook returned {response.status_code}"
            )

        self._circuit_breaker.record_success()
        logger.info(
            "Slack notification sent",
            extra={"alert_id": alert.id, "tenant_id": alert.tenant_id}
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class WebhookSender(IDeliverySender):
    """POSTs the alert as JSON to the rule's webhook URL with its headers."""

    def __init__(self, timeout_seconds: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        if rule is None or not rule.webhook_url:
            raise DeliveryException(DeliveryChannel.WEBHOOK, "no webhook URL configured")

        client = await self._get_client()
        try:
            response = await client.post(
                rule.webhook_url,
                json=alert_payload(alert),
                headers=dict(rule.webhook_headers),
            )
        except httpx.HTTPError as e:
            raise DeliveryException(DeliveryChannel.WEBHOOK, f"request failed: {e}") from e

        if not response.is_success:
            raise DeliveryException(
                DeliveryChannel.WEBHOOK, f"webhook returned {response.status_code}"
            )

        logger.info(
            "Webhook notification sent",
            extra={"alert_id": alert.id, "tenant_id": alert.tenant_id, "status_code": response.status_code}
        )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class InAppSender(IDeliverySender):
    """In-app alerts are visible once persisted; nothing goes over the wire."""

    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        logger.debug("In-app alert delivered", extra={"alert_id": alert.id})


def build_default_senders(settings: Settings) -> Dict[str, IDeliverySender]:
    """Senders for every channel this package can deliver over. Email has none."""
    return {
        DeliveryChannel.SLACK: SlackSender(
            fallback_webhook_url=settings.slack_webhook_url,
            timeout_seconds=settings.slack_timeout_seconds,
        ),
        DeliveryChannel.WEBHOOK: WebhookSender(timeout_seconds=settings.webhook_timeout_seconds),
        DeliveryChannel.IN_APP: InAppSender(),
    }
