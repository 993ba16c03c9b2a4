"""
Alerting Infrastructure Repositories
====================================

Concrete implementation of the alerting repository interface using
SQLAlchemy.

Alert creation is a single transaction: alert row, result link, rule
counters and delivery intents commit together or not at all.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grc_monitor.alerting.application.services import IAlertRepository
from grc_monitor.alerting.domain import Alert, AlertRule, DeliveryJob
from grc_monitor.alerting.infrastructure.models import (
    AlertDeliveryModel, AlertModel, AlertRuleModel,
)
from grc_monitor.config import (
    AlertStatus, DeliveryStatus, FAILING_RESULT_STATUSES, SLA_EXEMPT_ALERT_STATUSES,
)
from grc_monitor.core import RepositoryException
from grc_monitor.monitoring.infrastructure.models import TestResultModel
from grc_monitor.monitoring.infrastructure.repositories import acquire_tenant_lock
from grc_monitor.shared.infrastructure.clock import new_id
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def to_rule(model: AlertRuleModel) -> AlertRule:
    return AlertRule(
        id=model.id,
        tenant_id=model.tenant_id,
        name=model.name,
        description=model.description,
        enabled=model.enabled,
        priority=model.priority,
        match_test_types=list(model.match_test_types or []),
        match_severities=list(model.match_severities or []),
        match_result_statuses=list(model.match_result_statuses or []),
        match_control_ids=list(model.match_control_ids or []),
        match_tags=list(model.match_tags or []),
        consecutive_failures=model.consecutive_failures,
        cooldown_minutes=model.cooldown_minutes,
        alert_severity=model.alert_severity,
        alert_title_template=model.alert_title_template,
        auto_assign_to=model.auto_assign_to,
        sla_hours=model.sla_hours,
        delivery_channels=list(model.delivery_channels or []),
        slack_webhook_url=model.slack_webhook_url,
        webhook_url=model.webhook_url,
        webhook_headers=dict(model.webhook_headers or {}),
        alerts_generated=model.alerts_generated,
        last_triggered_at=model.last_triggered_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def to_alert(model: AlertModel) -> Alert:
    return Alert(
        id=model.id,
        tenant_id=model.tenant_id,
        alert_number=model.alert_number,
        title=model.title,
        description=model.description,
        severity=model.severity,
        status=model.status,
        control_id=model.control_id,
        test_id=model.test_id,
        test_result_id=model.test_result_id,
        alert_rule_id=model.alert_rule_id,
        assigned_to=model.assigned_to,
        assigned_by=model.assigned_by,
        assigned_at=model.assigned_at,
        sla_deadline=model.sla_deadline,
        sla_breached=model.sla_breached,
        resolved_by=model.resolved_by,
        resolved_at=model.resolved_at,
        resolution_notes=model.resolution_notes,
        suppressed_until=model.suppressed_until,
        suppression_reason=model.suppression_reason,
        delivery_channels=list(model.delivery_channels or []),
        tags=list(model.tags or []),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def to_delivery(model: AlertDeliveryModel) -> DeliveryJob:
    return DeliveryJob(
        id=model.id,
        tenant_id=model.tenant_id,
        alert_id=model.alert_id,
        channel=model.channel,
        status=model.status,
        attempts=model.attempts,
        last_error=model.last_error,
        created_at=model.created_at,
        delivered_at=model.delivered_at,
    )


class SQLAlchemyAlertRepository(IAlertRepository):
    """
    SQLAlchemy implementation of the alert repository.

    Handles persistence of AlertRule, Alert and DeliveryJob entities using
    async SQLAlchemy.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("Alert repository operation failed", extra={"error": str(e)})
            raise RepositoryException("Database operation failed", {"error": str(e)}) from e

    # ========== Rule evaluation ==========

    async def list_enabled_rules(self, tenant_id: str) -> List[AlertRule]:
        stmt = (
            select(AlertRuleModel)
            .where(AlertRuleModel.tenant_id == tenant_id, AlertRuleModel.enabled.is_(True))
            .order_by(AlertRuleModel.priority, AlertRuleModel.created_at, AlertRuleModel.id)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_rule(model) for model in result.scalars().all()]

    async def count_recent_alerts(
        self,
        tenant_id: str,
        test_id: str,
        rule_id: str,
        since: datetime
    ) -> int:
        stmt = select(func.count(AlertModel.id)).where(
            AlertModel.tenant_id == tenant_id,
            AlertModel.test_id == test_id,
            AlertModel.alert_rule_id == rule_id,
            AlertModel.created_at >= since,
        )
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def has_consecutive_failures(self, tenant_id: str, test_id: str, count: int) -> bool:
        stmt = (
            select(TestResultModel.status)
            .where(TestResultModel.tenant_id == tenant_id, TestResultModel.test_id == test_id)
            .order_by(TestResultModel.started_at.desc(), TestResultModel.id.desc())
            .limit(count)
        )
        async with self._transaction() as session:
            statuses = list((await session.execute(stmt)).scalars().all())

        return len(statuses) == count and all(s in FAILING_RESULT_STATUSES for s in statuses)

    async def insert_alert(self, alert: Alert) -> int:
        async with self._transaction() as session:
            await acquire_tenant_lock(session, alert.tenant_id)

            last_number = await session.scalar(
                select(func.coalesce(func.max(AlertModel.alert_number), 0))
                .where(AlertModel.tenant_id == alert.tenant_id)
            )
            alert_number = int(last_number or 0) + 1

            session.add(AlertModel(
                id=alert.id,
                tenant_id=alert.tenant_id,
                alert_number=alert_number,
                title=alert.title,
                description=alert.description,
                severity=alert.severity,
                status=alert.status,
                test_id=alert.test_id,
                test_result_id=alert.test_result_id,
                control_id=alert.control_id,
                alert_rule_id=alert.alert_rule_id,
                assigned_to=alert.assigned_to,
                assigned_by=alert.assigned_by,
                assigned_at=alert.assigned_at,
                sla_deadline=alert.sla_deadline,
                sla_breached=alert.sla_breached,
                delivery_channels=list(alert.delivery_channels),
                tags=list(alert.tags),
                created_at=alert.created_at,
                updated_at=alert.updated_at or alert.created_at,
            ))
            await session.flush()

            if alert.test_result_id:
                await session.execute(
                    update(TestResultModel)
                    .where(
                        TestResultModel.id == alert.test_result_id,
                        TestResultModel.tenant_id == alert.tenant_id,
                    )
                    .values(alert_generated=True, alert_id=alert.id)
                )

            if alert.alert_rule_id:
                await session.execute(
                    update(AlertRuleModel)
                    .where(
                        AlertRuleModel.id == alert.alert_rule_id,
                        AlertRuleModel.tenant_id == alert.tenant_id,
                    )
                    .values(
                        alerts_generated=AlertRuleModel.alerts_generated + 1,
                        last_triggered_at=alert.created_at,
                    )
                )

            for channel in dict.fromkeys(alert.delivery_channels):
                session.add(AlertDeliveryModel(
                    id=new_id(),
                    tenant_id=alert.tenant_id,
                    alert_id=alert.id,
                    channel=channel,
                    status=DeliveryStatus.PENDING,
                    attempts=0,
                    created_at=alert.created_at,
                ))

        return alert_number

    # ========== Reconciliation ==========

    async def mark_sla_breaches(self, now: datetime) -> int:
        stmt = (
            update(AlertModel)
            .where(
                AlertModel.sla_deadline.is_not(None),
                AlertModel.sla_deadline < now,
                AlertModel.sla_breached.is_(False),
                AlertModel.status.not_in(SLA_EXEMPT_ALERT_STATUSES),
            )
            .values(sla_breached=True, updated_at=now)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    async def unsuppress_expired(self, now: datetime) -> int:
        stmt = (
            update(AlertModel)
            .where(
                AlertModel.status == AlertStatus.SUPPRESSED,
                AlertModel.suppressed_until.is_not(None),
                AlertModel.suppressed_until < now,
            )
            .values(status=AlertStatus.OPEN, suppressed_until=None, updated_at=now)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    # ========== Lifecycle ==========

    async def get_alert(self, tenant_id: str, alert_id: str) -> Optional[Alert]:
        stmt = select(AlertModel).where(AlertModel.id == alert_id, AlertModel.tenant_id == tenant_id)
        async with self._transaction() as session:
            model = await session.scalar(stmt)
            return to_alert(model) if model else None

    async def update_alert(self, alert: Alert, updated_at: datetime) -> None:
        stmt = (
            update(AlertModel)
            .where(AlertModel.id == alert.id, AlertModel.tenant_id == alert.tenant_id)
            .values(
                status=alert.status,
                assigned_to=alert.assigned_to,
                assigned_by=alert.assigned_by,
                assigned_at=alert.assigned_at,
                resolved_by=alert.resolved_by,
                resolved_at=alert.resolved_at,
                resolution_notes=alert.resolution_notes,
                suppressed_until=alert.suppressed_until,
                suppression_reason=alert.suppression_reason,
                updated_at=updated_at,
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)
        alert.updated_at = updated_at

    @staticmethod
    def _alert_conditions(tenant_id: str, filters: dict) -> list:
        conditions = [AlertModel.tenant_id == tenant_id]
        if filters.get("status"):
            conditions.append(AlertModel.status.in_(filters["status"]))
        if filters.get("severity"):
            conditions.append(AlertModel.severity.in_(filters["severity"]))
        if "control_id" in filters:
            conditions.append(AlertModel.control_id == filters["control_id"])
        if "test_id" in filters:
            conditions.append(AlertModel.test_id == filters["test_id"])
        if "assigned_to" in filters:
            if filters["assigned_to"] is None:
                conditions.append(AlertModel.assigned_to.is_(None))
            else:
                conditions.append(AlertModel.assigned_to == filters["assigned_to"])
        if "sla_breached" in filters:
            conditions.append(AlertModel.sla_breached.is_(bool(filters["sla_breached"])))
        return conditions

    async def list_alerts(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[Alert]:
        stmt = (
            select(AlertModel)
            .where(and_(*self._alert_conditions(tenant_id, filters)))
            .order_by(AlertModel.created_at.desc(), AlertModel.alert_number.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_alert(model) for model in result.scalars().all()]

    async def count_alerts(self, tenant_id: str, filters: dict) -> int:
        stmt = select(func.count(AlertModel.id)).where(and_(*self._alert_conditions(tenant_id, filters)))
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    # ========== Rules ==========

    async def insert_rule(self, rule: AlertRule) -> None:
        async with self._transaction() as session:
            session.add(AlertRuleModel(
                id=rule.id,
                tenant_id=rule.tenant_id,
                name=rule.name,
                description=rule.description,
                enabled=rule.enabled,
                priority=rule.priority,
                match_test_types=list(rule.match_test_types),
                match_severities=list(rule.match_severities),
                match_result_statuses=list(rule.match_result_statuses),
                match_control_ids=list(rule.match_control_ids),
                match_tags=list(rule.match_tags),
                consecutive_failures=rule.consecutive_failures,
                cooldown_minutes=rule.cooldown_minutes,
                alert_severity=rule.alert_severity,
                alert_title_template=rule.alert_title_template,
                auto_assign_to=rule.auto_assign_to,
                sla_hours=rule.sla_hours,
                delivery_channels=list(rule.delivery_channels),
                slack_webhook_url=rule.slack_webhook_url,
                webhook_url=rule.webhook_url,
                webhook_headers=dict(rule.webhook_headers),
                alerts_generated=rule.alerts_generated,
                last_triggered_at=rule.last_triggered_at,
                created_at=rule.created_at,
                updated_at=rule.updated_at or rule.created_at,
            ))

    async def get_rule(self, tenant_id: str, rule_id: str) -> Optional[AlertRule]:
        stmt = select(AlertRuleModel).where(
            AlertRuleModel.id == rule_id,
            AlertRuleModel.tenant_id == tenant_id,
        )
        async with self._transaction() as session:
            model = await session.scalar(stmt)
            return to_rule(model) if model else None

    async def rule_name_exists(self, tenant_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
        conditions = [AlertRuleModel.tenant_id == tenant_id, AlertRuleModel.name == name]
        if exclude_id is not None:
            conditions.append(AlertRuleModel.id != exclude_id)
        stmt = select(exists().where(*conditions))
        async with self._transaction() as session:
            return bool(await session.scalar(stmt))

    @staticmethod
    def _rule_conditions(tenant_id: str, filters: dict) -> list:
        conditions = [AlertRuleModel.tenant_id == tenant_id]
        if "enabled" in filters:
            conditions.append(AlertRuleModel.enabled.is_(bool(filters["enabled"])))
        return conditions

    async def list_rules(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[AlertRule]:
        stmt = (
            select(AlertRuleModel)
            .where(and_(*self._rule_conditions(tenant_id, filters)))
            .order_by(AlertRuleModel.priority, AlertRuleModel.created_at, AlertRuleModel.id)
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_rule(model) for model in result.scalars().all()]

    async def count_rules(self, tenant_id: str, filters: dict) -> int:
        stmt = select(func.count(AlertRuleModel.id)).where(and_(*self._rule_conditions(tenant_id, filters)))
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def update_rule(self, rule: AlertRule, updated_at: datetime) -> None:
        stmt = (
            update(AlertRuleModel)
            .where(AlertRuleModel.id == rule.id, AlertRuleModel.tenant_id == rule.tenant_id)
            .values(
                name=rule.name,
                description=rule.description,
                enabled=rule.enabled,
                priority=rule.priority,
                match_test_types=list(rule.match_test_types),
                match_severities=list(rule.match_severities),
                match_result_statuses=list(rule.match_result_statuses),
                match_control_ids=list(rule.match_control_ids),
                match_tags=list(rule.match_tags),
                consecutive_failures=rule.consecutive_failures,
                cooldown_minutes=rule.cooldown_minutes,
                alert_severity=rule.alert_severity,
                alert_title_template=rule.alert_title_template,
                auto_assign_to=rule.auto_assign_to,
                sla_hours=rule.sla_hours,
                delivery_channels=list(rule.delivery_channels),
                slack_webhook_url=rule.slack_webhook_url,
                webhook_url=rule.webhook_url,
                webhook_headers=dict(rule.webhook_headers),
                updated_at=updated_at,
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def delete_rule(self, tenant_id: str, rule_id: str) -> bool:
        async with self._transaction() as session:
            await session.execute(
                update(AlertModel)
                .where(AlertModel.tenant_id == tenant_id, AlertModel.alert_rule_id == rule_id)
                .values(alert_rule_id=None)
            )
            result = await session.execute(
                delete(AlertRuleModel)
                .where(AlertRuleModel.id == rule_id, AlertRuleModel.tenant_id == tenant_id)
            )
            return result.rowcount == 1

    # ========== Delivery ==========

    async def list_pending_deliveries(self, limit: int) -> List[DeliveryJob]:
        stmt = (
            select(AlertDeliveryModel)
            .where(AlertDeliveryModel.status == DeliveryStatus.PENDING)
            .order_by(AlertDeliveryModel.created_at, AlertDeliveryModel.id)
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_delivery(model) for model in result.scalars().all()]

    async def mark_delivery_delivered(self, job_id: str, delivered_at: datetime) -> None:
        stmt = (
            update(AlertDeliveryModel)
            .where(AlertDeliveryModel.id == job_id)
            .values(
                status=DeliveryStatus.DELIVERED,
                attempts=AlertDeliveryModel.attempts + 1,
                last_error=None,
                delivered_at=delivered_at,
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def record_delivery_failure(self, job_id: str, error: str, give_up: bool) -> None:
        values = {
            "attempts": AlertDeliveryModel.attempts + 1,
            "last_error": error,
        }
        if give_up:
            values["status"] = DeliveryStatus.FAILED

        stmt = update(AlertDeliveryModel).where(AlertDeliveryModel.id == job_id).values(values)
        async with self._transaction() as session:
            await session.execute(stmt)

    async def list_deliveries(self, tenant_id: str, alert_id: str) -> List[DeliveryJob]:
        stmt = (
            select(AlertDeliveryModel)
            .where(AlertDeliveryModel.tenant_id == tenant_id, AlertDeliveryModel.alert_id == alert_id)
            .order_by(AlertDeliveryModel.channel)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_delivery(model) for model in result.scalars().all()]

    async def requeue_deliveries(
        self,
        tenant_id: str,
        alert_id: str,
        channels: List[str],
        now: datetime
    ) -> None:
        async with self._transaction() as session:
            result = await session.execute(
                select(AlertDeliveryModel).where(
                    AlertDeliveryModel.tenant_id == tenant_id,
                    AlertDeliveryModel.alert_id == alert_id,
                    AlertDeliveryModel.channel.in_(channels),
                )
            )
            existing = {model.channel: model for model in result.scalars().all()}

            for channel in channels:
                model = existing.get(channel)
                if model is None:
                    session.add(AlertDeliveryModel(
                        id=new_id(),
                        tenant_id=tenant_id,
                        alert_id=alert_id,
                        channel=channel,
                        status=DeliveryStatus.PENDING,
                        attempts=0,
                        created_at=now,
                    ))
                    continue

                model.status = DeliveryStatus.PENDING
                model.attempts = 0
                model.last_error = None
                model.delivered_at = None
