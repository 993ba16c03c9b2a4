"""
Alerting Application Services
=============================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

- AlertGenerator: evaluates tenant rules against a failing result and writes
  at most one alert for it
- AlertReconciler: SLA breach and suppression expiry sweeps
- AlertLifecycleService: operator-driven status changes, listing and redelivery
- AlertRuleService: rule creation, edits and removal
- DeliveryDispatcher: drains persistent delivery intents through channel senders

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from grc_monitor.alerting.application.dto import (
    AlertRuleCreateDTO, AlertRuleUpdateDTO,
    MAX_RESOLUTION_NOTES, MAX_SUPPRESSION_REASON, MIN_SUPPRESSION_REASON,
)
from grc_monitor.alerting.domain import Alert, AlertRule, DeliveryJob, RuleMatcher, render_title
from grc_monitor.config import AlertStatus, ResultStatus, VALID_ALERT_STATUSES
from grc_monitor.core import (
    ConflictException, DeliveryException, DomainException, InvalidTransitionException,
    ResourceNotFoundException, ValidationException,
)
from grc_monitor.monitoring.application.services import IFailureHandler
from grc_monitor.monitoring.domain import Test, TestResult
from grc_monitor.shared.infrastructure.clock import Clock, new_id
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MAX_SUPPRESSION_WINDOW = timedelta(days=90)
NO_SENDER_FOR_CHANNEL = "no_sender_for_channel"


# ========== Repository Interfaces (Dependency Inversion) ==========

class IAlertRepository(ABC):
    """Interface for alert rule, alert and delivery intent data access."""

    # --- rule evaluation ---

    @abstractmethod
    async def list_enabled_rules(self, tenant_id: str) -> List[AlertRule]:
        """Enabled rules of a tenant ordered by (priority, created_at)."""

    @abstractmethod
    async def count_recent_alerts(
        self,
        tenant_id: str,
        test_id: str,
        rule_id: str,
        since: datetime
    ) -> int:
        """Alerts for (test, rule) created at or after `since`."""

    @abstractmethod
    async def has_consecutive_failures(self, tenant_id: str, test_id: str, count: int) -> bool:
        """Whether the latest `count` results of a test all failed or errored."""

    @abstractmethod
    async def insert_alert(self, alert: Alert) -> int:
        """
        Write an alert and allocate its alert number.

        In the same transaction: link the originating result, bump the rule's
        alerts_generated counter and enqueue one delivery intent per channel.
        """

    # --- reconciliation ---

    @abstractmethod
    async def mark_sla_breaches(self, now: datetime) -> int:
        """Flag overdue open alerts; returns the number flagged."""

    @abstractmethod
    async def unsuppress_expired(self, now: datetime) -> int:
        """Reopen alerts whose suppression ended; returns the number reopened."""

    # --- lifecycle ---

    @abstractmethod
    async def get_alert(self, tenant_id: str, alert_id: str) -> Optional[Alert]:
        """Get an alert by id within a tenant."""

    @abstractmethod
    async def update_alert(self, alert: Alert, updated_at: datetime) -> None:
        """Persist the lifecycle fields of an alert."""

    @abstractmethod
    async def list_alerts(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[Alert]:
        """
        Alerts of a tenant, newest first.

        Filters: status and severity (lists), control_id, test_id,
        assigned_to (None matches unassigned) and sla_breached.
        """

    @abstractmethod
    async def count_alerts(self, tenant_id: str, filters: dict) -> int:
        """Number of alerts matching `filters`."""

    # --- rules ---

    @abstractmethod
    async def insert_rule(self, rule: AlertRule) -> None:
        """Insert an alert rule."""

    @abstractmethod
    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AlertRule]:
        """Get a rule by id within a tenant."""

    @abstractmethod
    async def rule_name_exists(self, tenant_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
        """Whether the tenant already has a rule with this name, other than `exclude_id`."""

    @abstractmethod
    async def list_rules(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[AlertRule]:
        """Rules of a tenant in evaluation order. Filters: enabled."""

    @abstractmethod
    async def count_rules(self, tenant_id: str, filters: dict) -> int:
        """Number of rules matching `filters`."""

    @abstractmethod
    async def update_rule(self, rule: AlertRule, updated_at: datetime) -> None:
        """Persist the editable fields of a rule."""

    @abstractmethod
    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        """
        Delete a rule; its alerts are kept and unlinked from it.

        Returns False if the rule does not exist.
        """

    # --- delivery ---

    @abstractmethod
    async def list_pending_deliveries(self, limit: int) -> List[DeliveryJob]:
        """Oldest pending delivery intents."""

    @abstractmethod
    async def mark_delivery_delivered(self, job_id: str, delivered_at: datetime) -> None:
        """Mark a delivery intent as delivered."""

    @abstractmethod
    async def record_delivery_failure(self, job_id: str, error: str, give_up: bool) -> None:
        """Count a failed attempt; `give_up` marks the intent failed."""

    @abstractmethod
    async def list_deliveries(self, tenant_id: str, alert_id: str) -> List[DeliveryJob]:
        """Delivery intents of an alert ordered by channel."""

    @abstractmethod
    async def requeue_deliveries(
        self,
        tenant_id: str,
        alert_id: str,
        channels: List[str],
        now: datetime
    ) -> None:
        """
        Put one intent per channel back to pending with a fresh attempt count.

        Channels without an intent get a new one.
        """


class IDeliverySender(ABC):
    """Outbound channel for alert notifications."""

    @abstractmethod
    async def send(self, alert: Alert, rule: Optional[AlertRule]) -> None:
        """
        Deliver one alert.

        Raises:
            DeliveryException: delivery failed and may be retried
        """

    async def close(self) -> None:
        """Release resources held by the sender."""


# ========== Application Services ==========

class AlertGenerator(IFailureHandler):
    """
    Turns a failing result into at most one alert.

    Rules are walked in priority order and the first matching rule decides.
    A cooldown hit on that rule suppresses the alert without falling through
    to lower-priority rules.
    """

    def __init__(self, repository: IAlertRepository, clock: Clock):
        self._repo = repository
        self._clock = clock

    async def maybe_generate(self, tenant_id: str, test: Test, result: TestResult) -> Optional[str]:
        if test.tenant_id != tenant_id or result.tenant_id != tenant_id:
            logger.error(
                "Refusing to evaluate rules across tenants",
                extra={"tenant_id": tenant_id, "test_id": test.id, "result_id": result.id}
            )
            return None

        rules = await self._repo.list_enabled_rules(tenant_id)
        now = self._clock.now()

        for rule in rules:
            if not RuleMatcher.matches(rule, test, result):
                continue

            if rule.consecutive_failures > 1:
                streak = await self._repo.has_consecutive_failures(
                    tenant_id, test.id, rule.consecutive_failures
                )
                if not streak:
                    continue

            if rule.cooldown_minutes > 0:
                since = now - timedelta(minutes=rule.cooldown_minutes)
                recent = await self._repo.count_recent_alerts(tenant_id, test.id, rule.id, since)
                if recent >= 1:
                    logger.info(
                        "Alert suppressed by cooldown",
                        extra={
                            "tenant_id": tenant_id,
                            "test_id": test.id,
                            "rule_id": rule.id,
                            "cooldown_minutes": rule.cooldown_minutes,
                        }
                    )
                    return None

            return await self._raise_alert(rule, test, result, now)

        return None

    async def _raise_alert(self, rule: AlertRule, test: Test, result: TestResult, now: datetime) -> str:
        alert = Alert(
            id=new_id(),
            tenant_id=result.tenant_id,
            title=render_title(rule.alert_title_template, test, result),
            description=result.message,
            severity=rule.alert_severity,
            status=AlertStatus.OPEN,
            control_id=test.control_id,
            test_id=test.id,
            test_result_id=result.id,
            alert_rule_id=rule.id,
            assigned_to=rule.auto_assign_to,
            assigned_at=now if rule.auto_assign_to else None,
            sla_deadline=now + timedelta(hours=rule.sla_hours) if rule.sla_hours else None,
            sla_breached=False,
            delivery_channels=list(rule.delivery_channels),
            tags=list(test.tags),
            created_at=now,
            updated_at=now,
        )

        alert.alert_number = await self._repo.insert_alert(alert)

        logger.info(
            "Alert raised",
            extra={
                "tenant_id": alert.tenant_id,
                "alert_id": alert.id,
                "alert_number": alert.alert_number,
                "rule_id": rule.id,
                "test_id": test.id,
                "severity": alert.severity,
            }
        )
        return alert.id


class AlertReconciler:
    """
    Idempotent sweeps run every tick.

    - SLA breach: overdue alerts outside resolved/closed/suppressed get flagged
    - Unsuppress: expired suppressions reopen, bypassing the lifecycle table
    """

    def __init__(self, repository: IAlertRepository, clock: Clock):
        self._repo = repository
        self._clock = clock

    async def reconcile_sla_breaches(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock.now()
        breached = await self._repo.mark_sla_breaches(now)
        if breached:
            logger.warning("Alert SLA breaches detected", extra={"count": breached})
        return breached

    async def reconcile_suppression_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock.now()
        reopened = await self._repo.unsuppress_expired(now)
        if reopened:
            logger.info("Suppressed alerts reopened", extra={"count": reopened})
        return reopened


class AlertLifecycleService:
    """Operator-driven alert work: lifecycle transitions, listing and redelivery."""

    def __init__(self, repository: IAlertRepository, clock: Clock):
        self._repo = repository
        self._clock = clock

    async def get_alert(self, tenant_id: str, alert_id: str) -> Alert:
        alert = await self._repo.get_alert(tenant_id, alert_id)
        if alert is None:
            raise ResourceNotFoundException("alert", alert_id)
        return alert

    async def list_alerts(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[Alert], int]:
        """One page of the tenant's alerts and the total matching count."""
        alerts = await self._repo.list_alerts(tenant_id, filters, limit=limit, offset=offset)
        return alerts, await self._repo.count_alerts(tenant_id, filters)

    async def list_deliveries(self, tenant_id: str, alert_id: str) -> List[DeliveryJob]:
        await self.get_alert(tenant_id, alert_id)
        return await self._repo.list_deliveries(tenant_id, alert_id)

    async def redeliver(
        self,
        tenant_id: str,
        alert_id: str,
        channels: Optional[List[str]] = None
    ) -> List[DeliveryJob]:
        """
        Queue an alert for delivery again.

        The dispatcher picks the intents up on its next pass, with the full
        attempt budget.

        Raises:
            ResourceNotFoundException: unknown alert
            ValidationException: no channel to deliver to
        """
        alert = await self.get_alert(tenant_id, alert_id)
        targets = list(dict.fromkeys(channels or alert.delivery_channels))
        if not targets:
            raise ValidationException("Alert has no delivery channels", {"alert_id": alert_id})

        await self._repo.requeue_deliveries(tenant_id, alert_id, targets, self._clock.now())
        logger.info(
            "Alert queued for redelivery",
            extra={"tenant_id": tenant_id, "alert_id": alert_id, "channels": targets}
        )
        return await self._repo.list_deliveries(tenant_id, alert_id)

    async def change_status(self, tenant_id: str, alert_id: str, new_status: str) -> Alert:
        """
        Move an alert along its lifecycle.

        Raises:
            ValidationException: unknown status
            InvalidTransitionException: transition not allowed
        """
        if new_status not in VALID_ALERT_STATUSES:
            raise ValidationException(f"Invalid alert status: {new_status}")

        alert = await self.get_alert(tenant_id, alert_id)
        previous = alert.status
        alert.transition_to(new_status)

        now = self._clock.now()
        if new_status == AlertStatus.RESOLVED:
            alert.resolved_at = now

        await self._repo.update_alert(alert, now)
        self._log_transition(alert, previous)
        return alert

    async def assign(
        self,
        tenant_id: str,
        alert_id: str,
        assigned_to: str,
        assigned_by: Optional[str] = None
    ) -> Alert:
        """
        Assign an alert. Assigning an open alert acknowledges it.

        Raises:
            DomainException: alert is resolved or closed
        """
        alert = await self.get_alert(tenant_id, alert_id)
        if alert.status in (AlertStatus.RESOLVED, AlertStatus.CLOSED):
            raise DomainException(
                f"Cannot assign alert in '{alert.status}' status",
                {"status": alert.status}
            )

        previous = alert.status
        now = self._clock.now()
        alert.assigned_to = assigned_to
        alert.assigned_by = assigned_by
        alert.assigned_at = now
        if alert.status == AlertStatus.OPEN:
            alert.status = AlertStatus.ACKNOWLEDGED

        await self._repo.update_alert(alert, now)
        self._log_transition(alert, previous)
        return alert

    async def resolve(
        self,
        tenant_id: str,
        alert_id: str,
        resolution_notes: str,
        resolved_by: Optional[str] = None
    ) -> Alert:
        """
        Resolve an open, acknowledged or in-progress alert.

        Raises:
            ValidationException: notes missing or too long
            InvalidTransitionException: alert is in another status
        """
        if not resolution_notes or len(resolution_notes) > MAX_RESOLUTION_NOTES:
            raise ValidationException(
                f"Resolution notes are required and must be {MAX_RESOLUTION_NOTES} characters or less"
            )

        alert = await self.get_alert(tenant_id, alert_id)
        if alert.status not in (AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED, AlertStatus.IN_PROGRESS):
            raise InvalidTransitionException("alert", alert.status, AlertStatus.RESOLVED)

        previous = alert.status
        now = self._clock.now()
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = now
        alert.resolved_by = resolved_by
        alert.resolution_notes = resolution_notes

        await self._repo.update_alert(alert, now)
        self._log_transition(alert, previous)
        return alert

    async def suppress(
        self,
        tenant_id: str,
        alert_id: str,
        suppressed_until: datetime,
        suppression_reason: str
    ) -> Alert:
        """
        Suppress an alert until a future time, at most 90 days ahead.

        Raises:
            ValidationException: window or reason out of bounds
            InvalidTransitionException: alert is closed
        """
        now = self._clock.now()
        if suppressed_until.tzinfo is None:
            suppressed_until = suppressed_until.replace(tzinfo=timezone.utc)

        if suppressed_until <= now:
            raise ValidationException("suppressed_until must be in the future")
        if suppressed_until > now + MAX_SUPPRESSION_WINDOW:
            raise ValidationException("suppressed_until cannot be more than 90 days in the future")

        reason = suppression_reason or ""
        if len(reason) < MIN_SUPPRESSION_REASON:
            raise ValidationException(
                f"Suppression reason must be at least {MIN_SUPPRESSION_REASON} characters"
            )
        if len(reason) > MAX_SUPPRESSION_REASON:
            raise ValidationException(
                f"Suppression reason must be {MAX_SUPPRESSION_REASON} characters or less"
            )

        alert = await self.get_alert(tenant_id, alert_id)
        if alert.status == AlertStatus.CLOSED:
            raise InvalidTransitionException("alert", alert.status, AlertStatus.SUPPRESSED)

        previous = alert.status
        alert.status = AlertStatus.SUPPRESSED
        alert.suppressed_until = suppressed_until
        alert.suppression_reason = reason

        await self._repo.update_alert(alert, now)
        self._log_transition(alert, previous)
        return alert

    async def close(
        self,
        tenant_id: str,
        alert_id: str,
        resolution_notes: Optional[str] = None
    ) -> Alert:
        """
        Close an alert from any other status.

        Raises:
            InvalidTransitionException: alert is already closed
        """
        if resolution_notes is not None and len(resolution_notes) > MAX_RESOLUTION_NOTES:
            raise ValidationException(
                f"Resolution notes must be {MAX_RESOLUTION_NOTES} characters or less"
            )

        alert = await self.get_alert(tenant_id, alert_id)
        if alert.status == AlertStatus.CLOSED:
            raise InvalidTransitionException("alert", alert.status, AlertStatus.CLOSED)

        previous = alert.status
        alert.status = AlertStatus.CLOSED
        if resolution_notes is not None:
            alert.resolution_notes = resolution_notes

        now = self._clock.now()
        await self._repo.update_alert(alert, now)
        self._log_transition(alert, previous)
        return alert

    @staticmethod
    def _log_transition(alert: Alert, previous: str) -> None:
        logger.info(
            "Alert updated",
            extra={
                "tenant_id": alert.tenant_id,
                "alert_id": alert.id,
                "alert_number": alert.alert_number,
                "previous_status": previous,
                "status": alert.status,
            }
        )


class AlertRuleService:
    """Creates, edits and removes tenant alert rules."""

    def __init__(self, repository: IAlertRepository, clock: Clock):
        self._repo = repository
        self._clock = clock

    async def create_rule(self, tenant_id: str, dto: AlertRuleCreateDTO) -> AlertRule:
        """
        Create an alert rule.

        Raises:
            ConflictException: rule name already used in the tenant
        """
        if await self._repo.rule_name_exists(tenant_id, dto.name):
            raise ConflictException(
                "Alert rule name already exists in this organization",
                {"name": dto.name}
            )

        match_result_statuses = dto.match_result_statuses
        if match_result_statuses is None:
            match_result_statuses = [ResultStatus.FAIL]

        rule = AlertRule(
            id=new_id(),
            tenant_id=tenant_id,
            name=dto.name,
            description=dto.description,
            enabled=dto.enabled,
            priority=dto.priority,
            match_test_types=list(dto.match_test_types),
            match_severities=list(dto.match_severities),
            match_result_statuses=list(match_result_statuses),
            match_control_ids=list(dto.match_control_ids),
            match_tags=list(dto.match_tags),
            consecutive_failures=dto.consecutive_failures,
            cooldown_minutes=dto.cooldown_minutes,
            alert_severity=dto.alert_severity,
            alert_title_template=dto.alert_title_template,
            auto_assign_to=dto.auto_assign_to,
            sla_hours=dto.sla_hours,
            delivery_channels=list(dict.fromkeys(dto.delivery_channels)),
            slack_webhook_url=dto.slack_webhook_url,
            webhook_url=dto.webhook_url,
            webhook_headers=dict(dto.webhook_headers),
            created_at=self._clock.now(),
        )
        await self._repo.insert_rule(rule)

        logger.info(
            "Alert rule created",
            extra={"tenant_id": tenant_id, "rule_id": rule.id, "priority": rule.priority}
        )
        return rule

    async def get_rule(self, tenant_id: str, rule_id: str) -> AlertRule:
        rule = await self._repo.get_rule(tenant_id, rule_id)
        if rule is None:
            raise ResourceNotFoundException("alert rule", rule_id)
        return rule

    async def list_rules(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[AlertRule], int]:
        """One page of the tenant's rules in evaluation order and the total count."""
        rules = await self._repo.list_rules(tenant_id, filters, limit=limit, offset=offset)
        return rules, await self._repo.count_rules(tenant_id, filters)

    async def update_rule(self, tenant_id: str, rule_id: str, dto: AlertRuleUpdateDTO) -> AlertRule:
        """
        Change the fields present in `dto`.

        Raises:
            ValidationException: nothing to update
            ResourceNotFoundException: unknown rule
            ConflictException: new name already used in the tenant
        """
        changes = dto.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationException("No fields to update")

        rule = await self.get_rule(tenant_id, rule_id)

        if "name" in changes and changes["name"] != rule.name:
            if await self._repo.rule_name_exists(tenant_id, changes["name"], exclude_id=rule_id):
                raise ConflictException(
                    "Alert rule name already exists in this organization",
                    {"name": changes["name"]}
                )
        if "delivery_channels" in changes:
            changes["delivery_channels"] = list(dict.fromkeys(changes["delivery_channels"]))

        for name, value in changes.items():
            setattr(rule, name, value)

        now = self._clock.now()
        await self._repo.update_rule(rule, now)
        rule.updated_at = now

        logger.info(
            "Alert rule updated",
            extra={"tenant_id": tenant_id, "rule_id": rule_id, "fields": sorted(changes)}
        )
        return rule

    async def delete_rule(self, tenant_id: str, rule_id: str) -> None:
        """
        Delete a rule. Alerts it raised are kept.

        Raises:
            ResourceNotFoundException: unknown rule
        """
        if not await self._repo.delete_rule(tenant_id, rule_id):
            raise ResourceNotFoundException("alert rule", rule_id)

        logger.info("Alert rule deleted", extra={"tenant_id": tenant_id, "rule_id": rule_id})


class DeliveryDispatcher:
    """
    Drains pending delivery intents through the registered channel senders.

    A channel with no sender fails immediately. A failed send stays pending
    until `max_attempts` attempts have been made.
    """

    def __init__(
        self,
        repository: IAlertRepository,
        senders: Dict[str, IDeliverySender],
        clock: Clock,
        batch_limit: int = 50,
        max_attempts: int = 5
    ):
        self._repo = repository
        self._senders = dict(senders)
        self._clock = clock
        self._batch_limit = batch_limit
        self._max_attempts = max_attempts

    async def dispatch_pending(self) -> Dict[str, int]:
        """
        Attempt every pending delivery once.

        Returns:
            Counts of delivered, retried and failed intents
        """
        summary = {"delivered": 0, "retried": 0, "failed": 0}

        for job in await self._repo.list_pending_deliveries(self._batch_limit):
            sender = self._senders.get(job.channel)
            if sender is None:
                await self._repo.record_delivery_failure(job.id, NO_SENDER_FOR_CHANNEL, give_up=True)
                summary["failed"] += 1
                continue

            alert = await self._repo.get_alert(job.tenant_id, job.alert_id)
            if alert is None:
                await self._repo.record_delivery_failure(job.id, "alert_not_found", give_up=True)
                summary["failed"] += 1
                continue

            rule = None
            if alert.alert_rule_id:
                rule = await self._repo.get_rule(job.tenant_id, alert.alert_rule_id)

            try:
                await sender.send(alert, rule)
            except DeliveryException as e:
                summary[await self._record_failure(job, e.message)] += 1
                continue
            except Exception as e:
                logger.exception(
                    "Alert sender crashed",
                    extra={"alert_id": alert.id, "channel": job.channel}
                )
                error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                summary[await self._record_failure(job, error)] += 1
                continue

            await self._repo.mark_delivery_delivered(job.id, self._clock.now())
            summary["delivered"] += 1

        if any(summary.values()):
            logger.info("Alert deliveries dispatched", extra=summary)
        return summary

    async def _record_failure(self, job: DeliveryJob, error: str) -> str:
        """Count one failed attempt; returns the summary bucket it landed in."""
        give_up = job.attempts + 1 >= self._max_attempts
        await self._repo.record_delivery_failure(job.id, error, give_up=give_up)
        logger.warning(
            "Alert delivery failed",
            extra={
                "alert_id": job.alert_id,
                "channel": job.channel,
                "attempt": job.attempts + 1,
                "give_up": give_up,
                "error": error,
            }
        )
        return "failed" if give_up else "retried"

    async def close(self) -> None:
        """Close every sender."""
        for sender in self._senders.values():
            await sender.close()
