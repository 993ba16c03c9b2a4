"""
Alerting Infrastructure Models
==============================

SQLAlchemy ORM models for the alerting module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from grc_monitor.config import AlertStatus, DeliveryStatus
from grc_monitor.infrastructure.database import Base, UTCDateTime


class AlertRuleModel(Base):
    """
    Database model for AlertRule entity.

    Maps to the 'alert_rules' table.
    """
    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    # Match filters (empty list matches anything)
    match_test_types: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    match_severities: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    match_result_statuses: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    match_control_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    match_tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Action
    alert_severity: Mapped[str] = mapped_column(String(20), nullable=False)
    alert_title_template: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    auto_assign_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sla_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    delivery_channels: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Channel targets
    slack_webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    webhook_headers: Mapped[Dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    # Counters
    alerts_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_alert_rules_tenant_name"),
        Index("ix_alert_rules_evaluation", "tenant_id", "enabled", "priority", "created_at"),
    )


class AlertModel(Base):
    """
    Database model for Alert entity.

    Maps to the 'alerts' table.
    """
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    alert_number: Mapped[int] = mapped_column(Integer, nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AlertStatus.OPEN)

    # Origin
    test_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    test_result_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    control_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_rule_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("alert_rules.id"), nullable=True
    )

    # Assignment
    assigned_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # SLA tracking
    sla_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    sla_breached: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Resolution
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Suppression
    suppressed_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    suppression_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    delivery_channels: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "alert_number", name="uq_alerts_tenant_number"),
        Index("ix_alerts_cooldown", "tenant_id", "test_id", "alert_rule_id", "created_at"),
        Index("ix_alerts_sla", "sla_breached", "sla_deadline"),
        Index("ix_alerts_suppression", "status", "suppressed_until"),
    )


class AlertDeliveryModel(Base):
    """
    Database model for DeliveryJob entity.

    Maps to the 'alert_deliveries' table. Rows are written together with
    their alert.
    """
    __tablename__ = "alert_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_id: Mapped[str] = mapped_column(String(36), ForeignKey("alerts.id"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DeliveryStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("alert_id", "channel", name="uq_alert_deliveries_alert_channel"),
        Index("ix_alert_deliveries_pending", "status", "created_at"),
    )
