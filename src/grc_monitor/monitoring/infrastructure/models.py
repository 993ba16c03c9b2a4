"""
Monitoring Infrastructure Models
================================

SQLAlchemy ORM models for the monitoring module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column

from grc_monitor.config import Severity, TestStatus, RunStatus, TriggerType
from grc_monitor.infrastructure.database import Base, UTCDateTime

# Shared with the partial unique index guarding single-flight runs
ACTIVE_RUN_PREDICATE = "status IN ('pending', 'running')"


class TestModel(Base):
    """
    Database model for Test entity.

    Maps to the 'tests' table.
    """
    __tablename__ = "tests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Definition
    identifier: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    test_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default=Severity.MEDIUM)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TestStatus.DRAFT)
    control_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Schedule (exactly one form set)
    interval_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cron_expression: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Execution policy
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    config: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Scheduling state
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "identifier", name="uq_tests_tenant_identifier"),
        Index("ix_tests_due", "status", "next_run_at"),
    )


class TestRunModel(Base):
    """
    Database model for TestRun entity.

    Maps to the 'test_runs' table.
    """
    __tablename__ = "test_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    run_number: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RunStatus.PENDING)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False, default=TriggerType.SCHEDULED)
    trigger_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    worker_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Counters
    total_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    passed_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_tests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "run_number", name="uq_test_runs_tenant_number"),
        # At most one pending/running run per tenant
        Index(
            "uq_test_runs_active_per_tenant",
            "tenant_id",
            unique=True,
            postgresql_where=text(ACTIVE_RUN_PREDICATE),
            sqlite_where=text(ACTIVE_RUN_PREDICATE),
        ),
    )


class TestResultModel(Base):
    """
    Database model for TestResult entity.

    Maps to the 'test_results' table.
    """
    __tablename__ = "test_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    test_run_id: Mapped[str] = mapped_column(String(36), ForeignKey("test_runs.id"), nullable=False)
    test_id: Mapped[str] = mapped_column(String(36), ForeignKey("tests.id"), nullable=False)
    control_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Alert linkage, written in the same transaction as the alert
    alert_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    alert_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    __table_args__ = (
        UniqueConstraint("test_run_id", "test_id", name="uq_test_results_run_test"),
        Index("ix_test_results_history", "tenant_id", "test_id", "started_at"),
    )
