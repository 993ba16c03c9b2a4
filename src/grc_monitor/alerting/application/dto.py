"""
Alerting Application DTOs
=========================

Data Transfer Objects for the alerting API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from grc_monitor.alerting.domain import Alert, AlertRule, DeliveryJob
from grc_monitor.config import VALID_RESULT_STATUSES


# ========== Type Aliases for Literals ==========
AlertSeverityStr = Literal["critical", "high", "medium", "low"]
AlertStatusStr = Literal["open", "acknowledged", "in_progress", "resolved", "suppressed", "closed"]
DeliveryChannelStr = Literal["slack", "email", "webhook", "in_app"]

ALLOWED_WEBHOOK_HEADERS = {
    "authorization",
    "content-type",
    "x-api-key",
    "x-request-id",
    "x-correlation-id",
    "user-agent",
}
CUSTOM_HEADER_PREFIX = "x-custom-"

MAX_RESOLUTION_NOTES = 10000
MIN_SUPPRESSION_REASON = 20
MAX_SUPPRESSION_REASON = 5000


def _require_https(url: Optional[str]) -> Optional[str]:
    if url is None:
        return None
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValueError("webhook URLs must use https")
    return url


def _check_result_statuses(statuses: Optional[List[str]]) -> Optional[List[str]]:
    if statuses is not None:
        unknown = [status for status in statuses if status not in VALID_RESULT_STATUSES]
        if unknown:
            raise ValueError(f"unknown result statuses: {unknown}")
    return statuses


def _is_header_safe(text: str) -> bool:
    """Printable ASCII only; anything else cannot go on the wire as a header."""
    return all(32 <= ord(char) < 127 for char in text)


def _check_webhook_headers(headers: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if headers is None:
        return None
    for name, value in headers.items():
        lowered = name.lower()
        if lowered not in ALLOWED_WEBHOOK_HEADERS and not lowered.startswith(CUSTOM_HEADER_PREFIX):
            raise ValueError(f"header not allowed: {name}")
        if not _is_header_safe(name) or not _is_header_safe(value):
            raise ValueError(f"header {name!r} must be printable ASCII")
    return headers


# ========== Request DTOs ==========

class AlertRuleCreateDTO(BaseModel):
    """DTO for creating an alert rule."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: bool = True
    priority: int = Field(default=100, description="Lower value is evaluated first")

    match_test_types: List[str] = Field(default_factory=list)
    match_severities: List[str] = Field(default_factory=list)
    match_result_statuses: Optional[List[str]] = Field(
        None,
        description="Result statuses that trigger the rule; defaults to ['fail']"
    )
    match_control_ids: List[str] = Field(default_factory=list)
    match_tags: List[str] = Field(default_factory=list)
    consecutive_failures: int = Field(default=1, ge=1)
    cooldown_minutes: int = Field(default=0, ge=0)

    alert_severity: AlertSeverityStr
    alert_title_template: Optional[str] = Field(None, max_length=500)
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = Field(None, ge=1)
    delivery_channels: List[DeliveryChannelStr] = Field(..., min_length=1)

    slack_webhook_url: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_headers: Dict[str, str] = Field(default_factory=dict)

    @field_validator("match_result_statuses")
    @classmethod
    def validate_result_statuses(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Only known result statuses can be matched."""
        return _check_result_statuses(v)

    @field_validator("slack_webhook_url", "webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        """Outbound targets must be https."""
        return _require_https(v)

    @field_validator("webhook_headers")
    @classmethod
    def validate_webhook_headers(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Restrict headers to a fixed allow-list or the X-Custom- prefix."""
        return _check_webhook_headers(v)


class AlertRuleUpdateDTO(BaseModel):
    """
    DTO for a partial alert rule update.

    Only the fields present in the request change. Fields without a
    meaningful empty value cannot be set to null.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None

    match_test_types: Optional[List[str]] = None
    match_severities: Optional[List[str]] = None
    match_result_statuses: Optional[List[str]] = None
    match_control_ids: Optional[List[str]] = None
    match_tags: Optional[List[str]] = None
    consecutive_failures: Optional[int] = Field(None, ge=1)
    cooldown_minutes: Optional[int] = Field(None, ge=0)

    alert_severity: Optional[AlertSeverityStr] = None
    alert_title_template: Optional[str] = Field(None, max_length=500)
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = Field(None, ge=1)
    delivery_channels: Optional[List[DeliveryChannelStr]] = Field(None, min_length=1)

    slack_webhook_url: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_headers: Optional[Dict[str, str]] = None

    @field_validator(
        "name", "enabled", "priority", "match_test_types", "match_severities",
        "match_result_statuses", "match_control_ids", "match_tags", "consecutive_failures",
        "cooldown_minutes", "alert_severity", "delivery_channels", "webhook_headers",
    )
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v

    @field_validator("match_result_statuses")
    @classmethod
    def validate_result_statuses(cls, v: List[str]) -> List[str]:
        return _check_result_statuses(v)

    @field_validator("slack_webhook_url", "webhook_url")
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        return _require_https(v)

    @field_validator("webhook_headers")
    @classmethod
    def validate_webhook_headers(cls, v: Dict[str, str]) -> Dict[str, str]:
        return _check_webhook_headers(v)


class AlertRedeliverDTO(BaseModel):
    """Optional request body for re-queuing alert deliveries."""
    channels: Optional[List[DeliveryChannelStr]] = Field(
        None,
        min_length=1,
        description="Channels to deliver again; defaults to the alert's own channels"
    )


class AlertStatusChangeDTO(BaseModel):
    """Request body for an alert status transition."""
    status: AlertStatusStr


class AlertAssignDTO(BaseModel):
    """Request body for assigning an alert."""
    assigned_to: str = Field(..., min_length=1)


class AlertResolveDTO(BaseModel):
    """Request body for resolving an alert."""
    resolution_notes: str = Field(..., min_length=1, max_length=MAX_RESOLUTION_NOTES)


class AlertSuppressDTO(BaseModel):
    """Request body for suppressing an alert."""
    suppressed_until: datetime
    suppression_reason: str = Field(
        ...,
        min_length=MIN_SUPPRESSION_REASON,
        max_length=MAX_SUPPRESSION_REASON
    )


class AlertCloseDTO(BaseModel):
    """Optional request body for closing an alert."""
    resolution_notes: Optional[str] = Field(None, max_length=MAX_RESOLUTION_NOTES)


# ========== Response DTOs ==========

class AlertRuleResponse(BaseModel):
    """Response model for an alert rule."""
    id: str
    name: str
    enabled: bool
    priority: int
    match_test_types: List[str]
    match_severities: List[str]
    match_result_statuses: List[str]
    match_control_ids: List[str]
    match_tags: List[str]
    consecutive_failures: int
    cooldown_minutes: int
    alert_severity: str
    alert_title_template: Optional[str] = None
    auto_assign_to: Optional[str] = None
    sla_hours: Optional[int] = None
    delivery_channels: List[str]
    alerts_generated: int = 0

    @classmethod
    def from_entity(cls, rule: AlertRule) -> "AlertRuleResponse":
        return cls(
            id=rule.id,
            name=rule.name,
            enabled=rule.enabled,
            priority=rule.priority,
            match_test_types=rule.match_test_types,
            match_severities=rule.match_severities,
            match_result_statuses=rule.match_result_statuses,
            match_control_ids=rule.match_control_ids,
            match_tags=rule.match_tags,
            consecutive_failures=rule.consecutive_failures,
            cooldown_minutes=rule.cooldown_minutes,
            alert_severity=rule.alert_severity,
            alert_title_template=rule.alert_title_template,
            auto_assign_to=rule.auto_assign_to,
            sla_hours=rule.sla_hours,
            delivery_channels=rule.delivery_channels,
            alerts_generated=rule.alerts_generated,
        )


class AlertResponse(BaseModel):
    """Response model for an alert."""
    id: str
    alert_number: Optional[int] = None
    title: str
    description: Optional[str] = None
    severity: str
    status: str
    control_id: str
    test_id: Optional[str] = None
    test_result_id: Optional[str] = None
    alert_rule_id: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    sla_deadline: Optional[datetime] = None
    sla_breached: bool = False
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    suppressed_until: Optional[datetime] = None
    suppression_reason: Optional[str] = None
    delivery_channels: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, alert: Alert) -> "AlertResponse":
        return cls(
            id=alert.id,
            alert_number=alert.alert_number,
            title=alert.title,
            description=alert.description,
            severity=alert.severity,
            status=alert.status,
            control_id=alert.control_id,
            test_id=alert.test_id,
            test_result_id=alert.test_result_id,
            alert_rule_id=alert.alert_rule_id,
            assigned_to=alert.assigned_to,
            assigned_at=alert.assigned_at,
            sla_deadline=alert.sla_deadline,
            sla_breached=alert.sla_breached,
            resolved_at=alert.resolved_at,
            resolution_notes=alert.resolution_notes,
            suppressed_until=alert.suppressed_until,
            suppression_reason=alert.suppression_reason,
            delivery_channels=alert.delivery_channels,
            created_at=alert.created_at,
        )


class AlertListResponse(BaseModel):
    """One page of alerts."""
    alerts: List[AlertResponse] = Field(default_factory=list)
    total_count: int = 0
    limit: int
    offset: int


class AlertRuleListResponse(BaseModel):
    """One page of alert rules."""
    rules: List[AlertRuleResponse] = Field(default_factory=list)
    total_count: int = 0
    limit: int
    offset: int


class DeliveryResponse(BaseModel):
    """Delivery state of one alert on one channel."""
    id: str
    alert_id: str
    channel: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, job: DeliveryJob) -> "DeliveryResponse":
        return cls(
            id=job.id,
            alert_id=job.alert_id,
            channel=job.channel,
            status=job.status,
            attempts=job.attempts,
            last_error=job.last_error,
            created_at=job.created_at,
            delivered_at=job.delivered_at,
        )
