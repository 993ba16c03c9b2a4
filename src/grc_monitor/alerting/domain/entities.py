"""
Alerting Domain Entities
========================

Pure Python domain entities for alert rules, alerts and delivery intents.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from grc_monitor.config import AlertStatus, DeliveryStatus, Severity, ALERT_STATUS_TRANSITIONS
from grc_monitor.core import InvalidTransitionException


@dataclass
class AlertRule:
    """
    Tenant-configured rule turning failing results into alerts.

    Empty match sets match anything. Rules are evaluated in ascending
    `priority` (ties by `created_at`) and the first match wins.
    """

    id: str
    tenant_id: str
    name: str
    enabled: bool = True
    priority: int = 100

    # Match filters
    match_test_types: List[str] = field(default_factory=list)
    match_severities: List[str] = field(default_factory=list)
    match_result_statuses: List[str] = field(default_factory=list)
    match_control_ids: List[str] = field(default_factory=list)
    match_tags: List[str] = field(default_factory=list)
    consecutive_failures: int = 1
    cooldown_minutes: int = 0

    # Action
    alert_severity: str = Severity.MEDIUM
    alert_title_template: Optional[str] = None
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = None
    delivery_channels: List[str] = field(default_factory=list)

    # Channel targets
    slack_webhook_url: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = field(default_factory=dict)

    description: Optional[str] = None
    alerts_generated: int = 0
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Alert:
    """
    Actionable incident raised from a failing test result.

    Status changes follow the alert lifecycle; the reconciler's unsuppress
    sweep is the only system-initiated exception.
    """

    id: str
    tenant_id: str
    title: str
    severity: str
    control_id: str
    status: str = AlertStatus.OPEN
    alert_number: Optional[int] = None
    description: Optional[str] = None

    test_id: Optional[str] = None
    test_result_id: Optional[str] = None
    alert_rule_id: Optional[str] = None

    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_at: Optional[datetime] = None

    sla_deadline: Optional[datetime] = None
    sla_breached: bool = False

    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    suppressed_until: Optional[datetime] = None
    suppression_reason: Optional[str] = None

    delivery_channels: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def can_transition_to(self, new_status: str) -> bool:
        return new_status in ALERT_STATUS_TRANSITIONS.get(self.status, [])

    def transition_to(self, new_status: str) -> None:
        """
        Apply a lifecycle transition.

        Reopening a suppressed alert clears its suppression window.

        Raises:
            InvalidTransitionException: transition not in the lifecycle table
        """
        if not self.can_transition_to(new_status):
            raise InvalidTransitionException("alert", self.status, new_status)

        if self.status == AlertStatus.SUPPRESSED and new_status == AlertStatus.OPEN:
            self.suppressed_until = None
        self.status = new_status


@dataclass
class DeliveryJob:
    """Persistent intent to deliver one alert over one channel."""

    id: str
    tenant_id: str
    alert_id: str
    channel: str
    status: str = DeliveryStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
