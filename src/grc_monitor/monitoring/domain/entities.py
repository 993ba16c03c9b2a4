"""
Monitoring Domain Entities
==========================

Pure Python domain entities for compliance test monitoring.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from grc_monitor.config import (
    ResultStatus, TriggerType,
    ACTIVE_RUN_STATUSES, FAILING_RESULT_STATUSES, TEST_STATUS_TRANSITIONS,
)
from grc_monitor.core import InvalidTransitionException
from grc_monitor.monitoring.domain.value_objects import Schedule


@dataclass
class Test:
    """
    Compliance check definition, owned by one tenant.

    Only active tests take part in scheduling; `next_run_at` is advanced
    by the schedule evaluator after each execution.
    """
    id: str
    tenant_id: str
    identifier: str
    title: str
    test_type: str
    severity: str
    status: str
    control_id: str
    schedule: Schedule

    timeout_seconds: int = 60
    retry_count: int = 0
    retry_delay_seconds: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    description: Optional[str] = None

    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def check_transition(self, new_status: str) -> None:
        """Raise if the lifecycle does not allow moving to `new_status`."""
        if new_status not in TEST_STATUS_TRANSITIONS.get(self.status, []):
            raise InvalidTransitionException("test", self.status, new_status)


@dataclass
class RunCounters:
    """Per-status tallies of a test run."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    warnings: int = 0

    def record(self, status: str) -> None:
        """Count one result under its status."""
        if status == ResultStatus.PASS:
            self.passed += 1
        elif status == ResultStatus.FAIL:
            self.failed += 1
        elif status == ResultStatus.ERROR:
            self.errors += 1
        elif status == ResultStatus.SKIP:
            self.skipped += 1
        elif status == ResultStatus.WARNING:
            self.warnings += 1
        else:
            raise ValueError(f"unknown result status: {status}")


@dataclass
class TestRun:
    """
    Batched execution sweep for one tenant.

    While a run is pending or running, no other run may start for the tenant.
    """
    id: str
    tenant_id: str
    status: str
    trigger_type: str = TriggerType.SCHEDULED
    run_number: Optional[int] = None
    counters: RunCounters = field(default_factory=RunCounters)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    worker_id: Optional[str] = None
    triggered_by: Optional[str] = None
    trigger_metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES


@dataclass
class TestResult:
    """Outcome of one test within one run."""
    id: str
    tenant_id: str
    test_run_id: str
    test_id: str
    control_id: str
    status: str
    severity: str
    started_at: datetime

    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    alert_generated: bool = False
    alert_id: Optional[str] = None

    @property
    def is_failing(self) -> bool:
        return self.status in FAILING_RESULT_STATUSES
