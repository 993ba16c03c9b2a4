"""Test fixtures for grc-monitor.

Provides:
- clock: a FrozenClock that only moves when told to
- session_maker: a session factory over a fresh SQLite database per test
- monitoring_repo / alert_repo: SQLAlchemy repositories on that database
- registry: an ExecutorRegistry holding a StubAdapter for the "custom" test type
- run_executor / alert_generator / reconciler: services wired together

Factories (make_test, make_rule, make_result, make_alert) build domain
entities with sensible defaults; seed_* helpers persist them.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from grc_monitor.alerting.application.services import AlertGenerator, AlertReconciler
from grc_monitor.alerting.domain import Alert, AlertRule
from grc_monitor.alerting.infrastructure.repositories import SQLAlchemyAlertRepository
from grc_monitor.config import AlertStatus, ResultStatus, RunStatus, Severity, TestStatus, TestType
from grc_monitor.infrastructure.database import build_session_maker, create_tables
from grc_monitor.monitoring.application.executors import (
    ExecutionOutcome, ExecutorAdapter, ExecutorRegistry,
)
from grc_monitor.monitoring.application.services import RunExecutor
from grc_monitor.monitoring.domain import RunCounters, Schedule, Test, TestResult, TestRun
from grc_monitor.monitoring.infrastructure.repositories import SQLAlchemyMonitoringRepository
from grc_monitor.shared.infrastructure.clock import new_id

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when advanced; sleeps advance it instead of waiting."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current = self.current + timedelta(seconds=seconds)


class StubAdapter(ExecutorAdapter):
    """Returns the verdict named in `config["verdict"]`, or scripted outcomes in order.

    Scripted entries may be an ExecutionOutcome, a status string, or an
    exception instance to raise.
    """

    def __init__(self, script: Optional[List[Any]] = None):
        self.script = list(script or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def execute(self, config: Dict[str, Any], deadline: datetime) -> ExecutionOutcome:
        self.calls.append(config)
        step = self.script.pop(0) if self.script else config.get("verdict", ResultStatus.PASS)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, ExecutionOutcome):
            return step
        return ExecutionOutcome(status=step, message=f"stub {step}")

    async def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Entity factories
# ---------------------------------------------------------------------------


def make_test(tenant_id: str = TENANT, **overrides: Any) -> Test:
    """Build an active interval test that is due at START."""
    values: Dict[str, Any] = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "identifier": f"T-{new_id()[:8]}",
        "title": "MFA enforced for admins",
        "test_type": TestType.CUSTOM,
        "severity": Severity.HIGH,
        "status": TestStatus.ACTIVE,
        "control_id": "AC-2",
        "schedule": Schedule(interval_minutes=5),
        "timeout_seconds": 60,
        "config": {},
        "tags": ["iam"],
        "next_run_at": START - timedelta(seconds=1),
        "created_at": START - timedelta(days=1),
    }
    values.update(overrides)
    return Test(**values)


def make_rule(tenant_id: str = TENANT, **overrides: Any) -> AlertRule:
    values: Dict[str, Any] = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "name": f"rule-{new_id()[:8]}",
        "enabled": True,
        "priority": 100,
        "match_result_statuses": [ResultStatus.FAIL],
        "alert_severity": Severity.HIGH,
        "delivery_channels": ["in_app"],
        "created_at": START - timedelta(days=1),
    }
    values.update(overrides)
    return AlertRule(**values)


def make_result(test: Test, run_id: str, **overrides: Any) -> TestResult:
    values: Dict[str, Any] = {
        "id": new_id(),
        "tenant_id": test.tenant_id,
        "test_run_id": run_id,
        "test_id": test.id,
        "control_id": test.control_id,
        "status": ResultStatus.FAIL,
        "severity": test.severity,
        "started_at": START,
        "completed_at": START,
        "duration_ms": 1,
    }
    values.update(overrides)
    return TestResult(**values)


def make_alert(tenant_id: str = TENANT, **overrides: Any) -> Alert:
    values: Dict[str, Any] = {
        "id": new_id(),
        "tenant_id": tenant_id,
        "title": "Manual alert",
        "severity": Severity.MEDIUM,
        "control_id": "AC-2",
        "status": AlertStatus.OPEN,
        "delivery_channels": [],
        "created_at": START - timedelta(hours=1),
        "updated_at": START - timedelta(hours=1),
    }
    values.update(overrides)
    return Alert(**values)


# ---------------------------------------------------------------------------
# Infrastructure fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
async def session_maker(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Session factory over a fresh SQLite database file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'grc.db'}")
    await create_tables(engine)
    yield build_session_maker(engine)
    await engine.dispose()


@pytest.fixture()
def monitoring_repo(session_maker) -> SQLAlchemyMonitoringRepository:
    return SQLAlchemyMonitoringRepository(session_maker)


@pytest.fixture()
def alert_repo(session_maker) -> SQLAlchemyAlertRepository:
    return SQLAlchemyAlertRepository(session_maker)


@pytest.fixture()
def stub_adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture()
def registry(stub_adapter: StubAdapter) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register(TestType.CUSTOM, stub_adapter)
    return registry


@pytest.fixture()
def alert_generator(alert_repo, clock) -> AlertGenerator:
    return AlertGenerator(alert_repo, clock)


@pytest.fixture()
def reconciler(alert_repo, clock) -> AlertReconciler:
    return AlertReconciler(alert_repo, clock)


@pytest.fixture()
def run_executor(monitoring_repo, registry, clock, alert_generator) -> RunExecutor:
    return RunExecutor(
        monitoring_repo,
        registry,
        clock,
        failure_handler=alert_generator,
        worker_id="worker-test",
    )


async def seed_test(repo: SQLAlchemyMonitoringRepository, tenant_id: str = TENANT, **overrides: Any) -> Test:
    test = make_test(tenant_id, **overrides)
    await repo.insert_test(test)
    return test


async def seed_rule(repo: SQLAlchemyAlertRepository, tenant_id: str = TENANT, **overrides: Any) -> AlertRule:
    rule = make_rule(tenant_id, **overrides)
    await repo.insert_rule(rule)
    return rule


async def seed_alert(repo: SQLAlchemyAlertRepository, tenant_id: str = TENANT, **overrides: Any) -> Alert:
    alert = make_alert(tenant_id, **overrides)
    alert.alert_number = await repo.insert_alert(alert)
    # Lifecycle fields (suppression, resolution) are only written on update
    await repo.update_alert(alert, alert.updated_at)
    return alert


def running_run(tenant_id: str = TENANT) -> TestRun:
    """An unsaved run in `running` status, for blocking a tenant."""
    return TestRun(
        id=new_id(),
        tenant_id=tenant_id,
        status=RunStatus.RUNNING,
        counters=RunCounters(total=1),
        started_at=START,
        created_at=START,
    )
