"""
Monitoring Infrastructure Repositories
======================================

Concrete implementation of the monitoring repository interface using
SQLAlchemy.

Every operation runs in its own transaction; SQLAlchemy errors are wrapped
into RepositoryException.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import and_, exists, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from grc_monitor.config import (
    ResultStatus, RunStatus, TestStatus, ACTIVE_RUN_STATUSES,
)
from grc_monitor.core import RepositoryException
from grc_monitor.monitoring.application.services import IMonitoringRepository
from grc_monitor.monitoring.domain import RunCounters, Schedule, Test, TestResult, TestRun
from grc_monitor.monitoring.infrastructure.models import (
    TestModel, TestResultModel, TestRunModel,
)
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# Result status -> run counter column
_COUNTER_COLUMNS = {
    ResultStatus.PASS: "passed_tests",
    ResultStatus.FAIL: "failed_tests",
    ResultStatus.ERROR: "error_tests",
    ResultStatus.SKIP: "skipped_tests",
    ResultStatus.WARNING: "warning_tests",
}


async def acquire_tenant_lock(session: AsyncSession, tenant_id: str) -> None:
    """
    Serialize writers for one tenant until the transaction ends.

    Uses a PostgreSQL transaction-scoped advisory lock; other backends rely on
    their unique indexes alone.
    """
    if session.bind.dialect.name == "postgresql":
        await session.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:tenant_id))"),
            {"tenant_id": tenant_id}
        )


def to_test(model: TestModel) -> Test:
    return Test(
        id=model.id,
        tenant_id=model.tenant_id,
        identifier=model.identifier,
        title=model.title,
        description=model.description,
        test_type=model.test_type,
        severity=model.severity,
        status=model.status,
        control_id=model.control_id,
        schedule=Schedule(
            interval_minutes=model.interval_minutes,
            cron_expression=model.cron_expression,
        ),
        timeout_seconds=model.timeout_seconds,
        retry_count=model.retry_count,
        retry_delay_seconds=model.retry_delay_seconds,
        config=dict(model.config or {}),
        tags=list(model.tags or []),
        last_run_at=model.last_run_at,
        next_run_at=model.next_run_at,
        created_at=model.created_at,
    )


def to_run(model: TestRunModel) -> TestRun:
    return TestRun(
        id=model.id,
        tenant_id=model.tenant_id,
        status=model.status,
        trigger_type=model.trigger_type,
        run_number=model.run_number,
        counters=RunCounters(
            total=model.total_tests,
            passed=model.passed_tests,
            failed=model.failed_tests,
            errors=model.error_tests,
            skipped=model.skipped_tests,
            warnings=model.warning_tests,
        ),
        started_at=model.started_at,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
        worker_id=model.worker_id,
        triggered_by=model.triggered_by,
        trigger_metadata=dict(model.trigger_metadata or {}),
        error_message=model.error_message,
        created_at=model.created_at,
    )


def to_result(model: TestResultModel) -> TestResult:
    return TestResult(
        id=model.id,
        tenant_id=model.tenant_id,
        test_run_id=model.test_run_id,
        test_id=model.test_id,
        control_id=model.control_id,
        status=model.status,
        severity=model.severity,
        started_at=model.started_at,
        message=model.message,
        details=dict(model.details or {}),
        error_message=model.error_message,
        completed_at=model.completed_at,
        duration_ms=model.duration_ms,
        alert_generated=model.alert_generated,
        alert_id=model.alert_id,
    )


class SQLAlchemyMonitoringRepository(IMonitoringRepository):
    """
    SQLAlchemy implementation of the monitoring repository.

    Handles persistence of Test, TestRun and TestResult entities using
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
            logger.error("Monitoring repository operation failed", extra={"error": str(e)})
            raise RepositoryException("Database operation failed", {"error": str(e)}) from e

    # ========== Scheduling ==========

    async def list_due_tests(self, now: datetime, limit: int) -> List[Test]:
        stmt = (
            select(TestModel)
            .where(
                TestModel.status == TestStatus.ACTIVE,
                TestModel.next_run_at.is_not(None),
                TestModel.next_run_at <= now,
            )
            .order_by(TestModel.tenant_id, TestModel.next_run_at)
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_test(model) for model in result.scalars().all()]

    async def tenant_has_active_run(self, tenant_id: str) -> bool:
        async with self._transaction() as session:
            return await self._has_active_run(session, tenant_id)

    @staticmethod
    async def _has_active_run(session: AsyncSession, tenant_id: str) -> bool:
        stmt = select(
            exists().where(
                TestRunModel.tenant_id == tenant_id,
                TestRunModel.status.in_(ACTIVE_RUN_STATUSES),
            )
        )
        return bool(await session.scalar(stmt))

    async def insert_run(self, run: TestRun) -> Optional[int]:
        """
        Insert a run under the tenant lock.

        The partial unique index on active runs rejects a racing insert that
        slipped past the existence check; that is reported as None.
        """
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    await acquire_tenant_lock(session, run.tenant_id)

                    if await self._has_active_run(session, run.tenant_id):
                        return None

                    last_number = await session.scalar(
                        select(func.coalesce(func.max(TestRunModel.run_number), 0))
                        .where(TestRunModel.tenant_id == run.tenant_id)
                    )
                    run_number = int(last_number or 0) + 1

                    session.add(TestRunModel(
                        id=run.id,
                        tenant_id=run.tenant_id,
                        run_number=run_number,
                        status=run.status,
                        trigger_type=run.trigger_type,
                        trigger_metadata=dict(run.trigger_metadata),
                        triggered_by=run.triggered_by,
                        worker_id=run.worker_id,
                        started_at=run.started_at,
                        total_tests=run.counters.total,
                        created_at=run.created_at or run.started_at,
                    ))
                    await session.flush()
                    return run_number
        except IntegrityError:
            logger.info("Concurrent run insert rejected", extra={"tenant_id": run.tenant_id})
            return None
        except SQLAlchemyError as e:
            logger.error("Could not insert test run", extra={"tenant_id": run.tenant_id, "error": str(e)})
            raise RepositoryException("Database operation failed", {"error": str(e)}) from e

    async def get_run(self, tenant_id: str, run_id: str) -> Optional[TestRun]:
        stmt = select(TestRunModel).where(
            TestRunModel.id == run_id,
            TestRunModel.tenant_id == tenant_id,
        )
        async with self._transaction() as session:
            model = await session.scalar(stmt)
            return to_run(model) if model else None

    async def insert_result(self, result: TestResult) -> None:
        async with self._transaction() as session:
            session.add(TestResultModel(
                id=result.id,
                tenant_id=result.tenant_id,
                test_run_id=result.test_run_id,
                test_id=result.test_id,
                control_id=result.control_id,
                status=result.status,
                severity=result.severity,
                message=result.message,
                details=dict(result.details),
                error_message=result.error_message,
                started_at=result.started_at,
                completed_at=result.completed_at,
                duration_ms=result.duration_ms,
                alert_generated=result.alert_generated,
                alert_id=result.alert_id,
            ))

    async def increment_run_counter(self, tenant_id: str, run_id: str, status: str) -> None:
        column_name = _COUNTER_COLUMNS.get(status)
        if column_name is None:
            raise RepositoryException(f"Unknown result status: {status}")

        column = getattr(TestRunModel, column_name)
        stmt = (
            update(TestRunModel)
            .where(TestRunModel.id == run_id, TestRunModel.tenant_id == tenant_id)
            .values({column_name: column + 1})
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def advance_test_schedule(
        self,
        tenant_id: str,
        test_id: str,
        last_run_at: datetime,
        next_run_at: datetime
    ) -> None:
        stmt = (
            update(TestModel)
            .where(TestModel.id == test_id, TestModel.tenant_id == tenant_id)
            .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=last_run_at)
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def finalize_run(
        self,
        tenant_id: str,
        run_id: str,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        counters: RunCounters,
        error_message: Optional[str] = None
    ) -> bool:
        stmt = (
            update(TestRunModel)
            .where(
                TestRunModel.id == run_id,
                TestRunModel.tenant_id == tenant_id,
                TestRunModel.status == RunStatus.RUNNING,
            )
            .values(
                status=status,
                completed_at=completed_at,
                duration_ms=duration_ms,
                total_tests=counters.total,
                passed_tests=counters.passed,
                failed_tests=counters.failed,
                error_tests=counters.errors,
                skipped_tests=counters.skipped,
                warning_tests=counters.warnings,
                error_message=error_message,
            )
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def cancel_run(self, tenant_id: str, run_id: str, completed_at: datetime) -> bool:
        stmt = (
            update(TestRunModel)
            .where(
                TestRunModel.id == run_id,
                TestRunModel.tenant_id == tenant_id,
                TestRunModel.status.in_(ACTIVE_RUN_STATUSES),
            )
            .values(status=RunStatus.CANCELLED, completed_at=completed_at)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def list_run_results(self, tenant_id: str, run_id: str) -> List[TestResult]:
        stmt = (
            select(TestResultModel)
            .where(
                TestResultModel.tenant_id == tenant_id,
                TestResultModel.test_run_id == run_id,
            )
            .order_by(TestResultModel.started_at, TestResultModel.id)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_result(model) for model in result.scalars().all()]

    @staticmethod
    def _run_conditions(tenant_id: str, filters: dict) -> list:
        conditions = [TestRunModel.tenant_id == tenant_id]
        if filters.get("status"):
            conditions.append(TestRunModel.status.in_(filters["status"]))
        if filters.get("trigger_type"):
            conditions.append(TestRunModel.trigger_type.in_(filters["trigger_type"]))
        return conditions

    async def list_runs(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[TestRun]:
        stmt = (
            select(TestRunModel)
            .where(and_(*self._run_conditions(tenant_id, filters)))
            .order_by(TestRunModel.created_at.desc(), TestRunModel.run_number.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_run(model) for model in result.scalars().all()]

    async def count_runs(self, tenant_id: str, filters: dict) -> int:
        stmt = select(func.count(TestRunModel.id)).where(and_(*self._run_conditions(tenant_id, filters)))
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    @staticmethod
    def _result_conditions(tenant_id: str, run_id: str, filters: dict) -> list:
        conditions = [
            TestResultModel.tenant_id == tenant_id,
            TestResultModel.test_run_id == run_id,
        ]
        if filters.get("status"):
            conditions.append(TestResultModel.status.in_(filters["status"]))
        if filters.get("severity"):
            conditions.append(TestResultModel.severity.in_(filters["severity"]))
        return conditions

    async def list_results(
        self,
        tenant_id: str,
        run_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[TestResult]:
        stmt = (
            select(TestResultModel)
            .where(and_(*self._result_conditions(tenant_id, run_id, filters)))
            .order_by(TestResultModel.started_at, TestResultModel.id)
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_result(model) for model in result.scalars().all()]

    async def count_results(self, tenant_id: str, run_id: str, filters: dict) -> int:
        stmt = select(func.count(TestResultModel.id)).where(
            and_(*self._result_conditions(tenant_id, run_id, filters))
        )
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    # ========== Test definitions ==========

    async def insert_test(self, test: Test) -> None:
        async with self._transaction() as session:
            session.add(TestModel(
                id=test.id,
                tenant_id=test.tenant_id,
                identifier=test.identifier,
                title=test.title,
                description=test.description,
                test_type=test.test_type,
                severity=test.severity,
                status=test.status,
                control_id=test.control_id,
                interval_minutes=test.schedule.interval_minutes,
                cron_expression=test.schedule.cron_expression,
                timeout_seconds=test.timeout_seconds,
                retry_count=test.retry_count,
                retry_delay_seconds=test.retry_delay_seconds,
                config=dict(test.config),
                tags=list(test.tags),
                last_run_at=test.last_run_at,
                next_run_at=test.next_run_at,
                created_at=test.created_at,
                updated_at=test.created_at,
            ))

    async def get_test(self, tenant_id: str, test_id: str) -> Optional[Test]:
        stmt = select(TestModel).where(TestModel.id == test_id, TestModel.tenant_id == tenant_id)
        async with self._transaction() as session:
            model = await session.scalar(stmt)
            return to_test(model) if model else None

    async def identifier_exists(self, tenant_id: str, identifier: str) -> bool:
        stmt = select(
            exists().where(TestModel.tenant_id == tenant_id, TestModel.identifier == identifier)
        )
        async with self._transaction() as session:
            return bool(await session.scalar(stmt))

    async def update_test_status(
        self,
        tenant_id: str,
        test_id: str,
        status: str,
        next_run_at: Optional[datetime]
    ) -> None:
        stmt = (
            update(TestModel)
            .where(TestModel.id == test_id, TestModel.tenant_id == tenant_id)
            .values(status=status, next_run_at=next_run_at)
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def update_test(self, test: Test, updated_at: datetime) -> None:
        stmt = (
            update(TestModel)
            .where(TestModel.id == test.id, TestModel.tenant_id == test.tenant_id)
            .values(
                title=test.title,
                description=test.description,
                test_type=test.test_type,
                severity=test.severity,
                control_id=test.control_id,
                interval_minutes=test.schedule.interval_minutes,
                cron_expression=test.schedule.cron_expression,
                timeout_seconds=test.timeout_seconds,
                retry_count=test.retry_count,
                retry_delay_seconds=test.retry_delay_seconds,
                config=dict(test.config),
                tags=list(test.tags),
                next_run_at=test.next_run_at,
                updated_at=updated_at,
            )
        )
        async with self._transaction() as session:
            await session.execute(stmt)

    async def list_tests(
        self,
        tenant_id: str,
        test_ids: Optional[Sequence[str]] = None,
        status: Optional[str] = None
    ) -> List[Test]:
        stmt = select(TestModel).where(TestModel.tenant_id == tenant_id)
        if test_ids is not None:
            stmt = stmt.where(TestModel.id.in_(list(test_ids)))
        if status is not None:
            stmt = stmt.where(TestModel.status == status)
        stmt = stmt.order_by(TestModel.identifier)

        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [to_test(model) for model in result.scalars().all()]
