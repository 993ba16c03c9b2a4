"""
Monitoring Application Services
===============================

Application services orchestrate business logic and coordinate between
domain entities and repositories.

- RunExecutor: picks up due tests per tenant, runs them as a batch, records
  results, advances schedules and hands failures to alerting
- TestDefinitionService: creates and edits tests and drives their status lifecycle

Following SOLID principles:
- Single Responsibility: Each service has one clear purpose
- Dependency Inversion: Depend on abstractions (repositories), not concrete implementations
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from itertools import groupby
from operator import attrgetter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from grc_monitor.config import (
    ResultStatus, RunStatus, TestStatus, TriggerType,
    VALID_RESULT_STATUSES, VALID_TEST_TYPES,
)
from grc_monitor.core import (
    ConfigurationException, ConflictException, InvalidTransitionException, RepositoryException,
    ResourceNotFoundException, RunInProgressException, ValidationException,
)
from grc_monitor.monitoring.application.dto import MAX_TRIGGER_TESTS, TestCreateDTO, TestUpdateDTO
from grc_monitor.monitoring.application.executors import (
    ExecutionOutcome, ExecutorRegistry, TransientError,
)
from grc_monitor.monitoring.domain import (
    RunCounters, Schedule, ScheduleEvaluator, Test, TestResult, TestRun,
)
from grc_monitor.shared.infrastructure.clock import Clock, new_id
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEADLINE_EXCEEDED = "deadline_exceeded"
NO_EXECUTOR_FOR_TYPE = "no_executor_for_type"
INVALID_SCHEDULE = "invalid_schedule"


# ========== Repository Interfaces (Dependency Inversion) ==========

class IMonitoringRepository(ABC):
    """Interface for test, run and result data access."""

    # --- scheduling ---

    @abstractmethod
    async def list_due_tests(self, now: datetime, limit: int) -> List[Test]:
        """Active tests with next_run_at <= now, ordered by (tenant_id, next_run_at)."""

    @abstractmethod
    async def tenant_has_active_run(self, tenant_id: str) -> bool:
        """Whether the tenant has a pending or running run."""

    @abstractmethod
    async def insert_run(self, run: TestRun) -> Optional[int]:
        """
        Insert a run and allocate its run number.

        Returns None when another pending/running run for the tenant exists.
        """

    @abstractmethod
    async def get_run(self, tenant_id: str, run_id: str) -> Optional[TestRun]:
        """Get a run by id within a tenant."""

    @abstractmethod
    async def insert_result(self, result: TestResult) -> None:
        """Insert one test result."""

    @abstractmethod
    async def increment_run_counter(self, tenant_id: str, run_id: str, status: str) -> None:
        """Add one to the run counter for `status`."""

    @abstractmethod
    async def advance_test_schedule(
        self,
        tenant_id: str,
        test_id: str,
        last_run_at: datetime,
        next_run_at: datetime
    ) -> None:
        """Record an execution and the next fire time of a test."""

    @abstractmethod
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
        """Close a running run. Returns False if the run is no longer running."""

    @abstractmethod
    async def cancel_run(self, tenant_id: str, run_id: str, completed_at: datetime) -> bool:
        """Cancel a pending/running run. Returns False if it was not active."""

    @abstractmethod
    async def list_run_results(self, tenant_id: str, run_id: str) -> List[TestResult]:
        """Results of a run in insertion order."""

    @abstractmethod
    async def list_runs(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[TestRun]:
        """Runs of a tenant, newest first. Filters: status, trigger_type."""

    @abstractmethod
    async def count_runs(self, tenant_id: str, filters: dict) -> int:
        """Number of runs matching the `list_runs` filters."""

    @abstractmethod
    async def list_results(
        self,
        tenant_id: str,
        run_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> List[TestResult]:
        """One page of a run's results in insertion order. Filters: status, severity."""

    @abstractmethod
    async def count_results(self, tenant_id: str, run_id: str, filters: dict) -> int:
        """Number of results matching the `list_results` filters."""

    # --- test definitions ---

    @abstractmethod
    async def insert_test(self, test: Test) -> None:
        """Insert a test definition."""

    @abstractmethod
    async def get_test(self, tenant_id: str, test_id: str) -> Optional[Test]:
        """Get a test by id within a tenant."""

    @abstractmethod
    async def identifier_exists(self, tenant_id: str, identifier: str) -> bool:
        """Whether the tenant already has a test with this identifier."""

    @abstractmethod
    async def update_test_status(
        self,
        tenant_id: str,
        test_id: str,
        status: str,
        next_run_at: Optional[datetime]
    ) -> None:
        """Set the lifecycle status and next fire time of a test."""

    @abstractmethod
    async def update_test(self, test: Test, updated_at: datetime) -> None:
        """Write the editable fields, schedule and next fire time of a test."""

    @abstractmethod
    async def list_tests(
        self,
        tenant_id: str,
        test_ids: Optional[Sequence[str]] = None,
        status: Optional[str] = None
    ) -> List[Test]:
        """Tests of a tenant, optionally restricted to ids and/or a status."""


class IFailureHandler(ABC):
    """Receives failing results from the run executor."""

    @abstractmethod
    async def maybe_generate(self, tenant_id: str, test: Test, result: TestResult) -> Optional[str]:
        """Evaluate alert rules for a failing result; returns the new alert id if any."""


# ========== Application Services ==========

class RunExecutor:
    """
    Executes due tests as per-tenant batched runs.

    Guarantees:
    - at most one pending/running run per tenant (checked here, enforced by
      the repository on insert)
    - exactly one result per (run, test); the result is written before the
      test's schedule is advanced
    - a failing test never aborts the batch; a repository failure marks the
      run failed and keeps what was already written
    """

    def __init__(
        self,
        repository: IMonitoringRepository,
        registry: ExecutorRegistry,
        clock: Clock,
        evaluator: Optional[ScheduleEvaluator] = None,
        failure_handler: Optional[IFailureHandler] = None,
        worker_id: Optional[str] = None,
        batch_limit: int = 100
    ):
        self._repo = repository
        self._registry = registry
        self._clock = clock
        self._evaluator = evaluator or ScheduleEvaluator()
        self._failure_handler = failure_handler
        self._worker_id = worker_id
        self._batch_limit = batch_limit

    async def poll_and_run(self, now: Optional[datetime] = None) -> List[TestRun]:
        """
        Run every tenant's due tests once.

        Tenants that already have an active run are skipped this tick.

        Returns:
            The runs started by this call
        """
        now = now or self._clock.now()
        due = await self._repo.list_due_tests(now, self._batch_limit)
        if not due:
            return []

        logger.info("Due tests picked up", extra={"count": len(due), "worker_id": self._worker_id})

        runs = []
        for tenant_id, batch in groupby(due, key=attrgetter("tenant_id")):
            tests = list(batch)
            try:
                run = await self._start_run(tenant_id, tests, TriggerType.SCHEDULED, now)
            except RepositoryException as e:
                logger.error(
                    "Could not start test run",
                    extra={"tenant_id": tenant_id, "error": e.message}
                )
                continue

            if run is None:
                continue

            await self._execute_batch(run, tests)
            runs.append(run)

        return runs

    async def trigger_run(
        self,
        tenant_id: str,
        test_ids: Optional[Sequence[str]] = None,
        triggered_by: Optional[str] = None,
        trigger_type: str = TriggerType.MANUAL,
        trigger_metadata: Optional[Dict[str, Any]] = None
    ) -> TestRun:
        """
        Start a run outside the schedule and execute it immediately.

        Args:
            tenant_id: Tenant to run tests for
            test_ids: Tests to run; every active test of the tenant if omitted
            triggered_by: User that requested the run

        Raises:
            ValidationException: too many ids, or nothing to run
            ResourceNotFoundException: an id does not belong to the tenant
            RunInProgressException: the tenant already has an active run
        """
        if test_ids is not None:
            unique_ids = list(dict.fromkeys(test_ids))
            if len(unique_ids) > MAX_TRIGGER_TESTS:
                raise ValidationException(
                    f"At most {MAX_TRIGGER_TESTS} tests can be run at once",
                    {"requested": len(unique_ids)}
                )
            tests = await self._repo.list_tests(tenant_id, test_ids=unique_ids)
            found = {test.id for test in tests}
            missing = [test_id for test_id in unique_ids if test_id not in found]
            if missing:
                raise ResourceNotFoundException("test", missing[0], {"missing": missing})
        else:
            tests = await self._repo.list_tests(tenant_id, status=TestStatus.ACTIVE)

        if not tests:
            raise ValidationException("No tests to run", {"tenant_id": tenant_id})

        run = await self._start_run(
            tenant_id, tests, trigger_type, self._clock.now(),
            triggered_by=triggered_by, trigger_metadata=trigger_metadata
        )
        if run is None:
            raise RunInProgressException(tenant_id)

        await self._execute_batch(run, tests)
        return run

    async def get_run(self, tenant_id: str, run_id: str) -> Tuple[TestRun, List[TestResult]]:
        """A run with its results, oldest first."""
        run = await self._repo.get_run(tenant_id, run_id)
        if run is None:
            raise ResourceNotFoundException("test run", run_id)
        return run, await self._repo.list_run_results(tenant_id, run_id)

    async def list_runs(
        self,
        tenant_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[TestRun], int]:
        """One page of the tenant's runs, newest first, and the total matching count."""
        runs = await self._repo.list_runs(tenant_id, filters, limit=limit, offset=offset)
        return runs, await self._repo.count_runs(tenant_id, filters)

    async def list_results(
        self,
        tenant_id: str,
        run_id: str,
        filters: dict,
        limit: int = 20,
        offset: int = 0
    ) -> Tuple[List[TestResult], int]:
        """
        One page of a run's results and the total matching count.

        Raises:
            ResourceNotFoundException: unknown run
        """
        if await self._repo.get_run(tenant_id, run_id) is None:
            raise ResourceNotFoundException("test run", run_id)
        results = await self._repo.list_results(tenant_id, run_id, filters, limit=limit, offset=offset)
        return results, await self._repo.count_results(tenant_id, run_id, filters)

    async def cancel_run(self, tenant_id: str, run_id: str) -> TestRun:
        """
        Cancel a pending or running run.

        Raises:
            ResourceNotFoundException: unknown run
            InvalidTransitionException: run already finished
        """
        run = await self._repo.get_run(tenant_id, run_id)
        if run is None:
            raise ResourceNotFoundException("test run", run_id)
        if not run.is_active:
            raise InvalidTransitionException("test run", run.status, RunStatus.CANCELLED)

        if not await self._repo.cancel_run(tenant_id, run_id, self._clock.now()):
            current = await self._repo.get_run(tenant_id, run_id)
            raise InvalidTransitionException(
                "test run", current.status if current else run.status, RunStatus.CANCELLED
            )

        logger.info("Test run cancelled", extra={"tenant_id": tenant_id, "run_id": run_id})
        return await self._repo.get_run(tenant_id, run_id)

    # ========== Run lifecycle ==========

    async def _start_run(
        self,
        tenant_id: str,
        tests: List[Test],
        trigger_type: str,
        now: datetime,
        triggered_by: Optional[str] = None,
        trigger_metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[TestRun]:
        if await self._repo.tenant_has_active_run(tenant_id):
            logger.info("Tenant has an active run, skipping", extra={"tenant_id": tenant_id})
            return None

        run = TestRun(
            id=new_id(),
            tenant_id=tenant_id,
            status=RunStatus.RUNNING,
            trigger_type=trigger_type,
            counters=RunCounters(total=len(tests)),
            started_at=now,
            worker_id=self._worker_id,
            triggered_by=triggered_by,
            trigger_metadata=dict(trigger_metadata or {}),
            created_at=now,
        )

        run_number = await self._repo.insert_run(run)
        if run_number is None:
            logger.info("Lost run creation race, skipping", extra={"tenant_id": tenant_id})
            return None

        run.run_number = run_number
        logger.info(
            "Test run started",
            extra={
                "tenant_id": tenant_id,
                "run_id": run.id,
                "run_number": run_number,
                "trigger_type": trigger_type,
                "total_tests": len(tests),
                "worker_id": self._worker_id,
            }
        )
        return run

    async def _execute_batch(self, run: TestRun, tests: List[Test]) -> None:
        try:
            for test in tests:
                current = await self._repo.get_run(run.tenant_id, run.id)
                if current is None or current.status != RunStatus.RUNNING:
                    logger.info(
                        "Test run no longer running, stopping dispatch",
                        extra={"run_id": run.id, "status": current.status if current else None}
                    )
                    run.status = current.status if current else RunStatus.CANCELLED
                    return
                await self._execute_test(run, test)
        except RepositoryException as e:
            logger.error(
                "Test run aborted",
                extra={"tenant_id": run.tenant_id, "run_id": run.id, "error": e.message}
            )
            await self._finalize(run, RunStatus.FAILED, e.message)
            return
        except Exception as e:
            logger.exception(
                "Test run crashed",
                extra={"tenant_id": run.tenant_id, "run_id": run.id}
            )
            await self._finalize(run, RunStatus.FAILED, str(e) or type(e).__name__)
            return

        await self._finalize(run, RunStatus.COMPLETED)

    async def _finalize(self, run: TestRun, status: str, error_message: Optional[str] = None) -> None:
        completed_at = self._clock.now()
        duration_ms = _elapsed_ms(run.started_at, completed_at)
        try:
            finalized = await self._repo.finalize_run(
                run.tenant_id, run.id, status, completed_at, duration_ms,
                run.counters, error_message
            )
        except RepositoryException as e:
            logger.error(
                "Could not finalize test run",
                extra={"tenant_id": run.tenant_id, "run_id": run.id, "error": e.message}
            )
            return

        if not finalized:
            logger.info("Test run was closed elsewhere", extra={"run_id": run.id})
            return

        run.status = status
        run.completed_at = completed_at
        run.duration_ms = duration_ms
        run.error_message = error_message
        logger.info(
            "Test run finished",
            extra={
                "tenant_id": run.tenant_id,
                "run_id": run.id,
                "run_number": run.run_number,
                "status": status,
                "passed": run.counters.passed,
                "failed": run.counters.failed,
                "errors": run.counters.errors,
                "duration_ms": duration_ms,
            }
        )

    # ========== Per-test execution ==========

    async def _execute_test(self, run: TestRun, test: Test) -> TestResult:
        started_at = self._clock.now()
        outcome = await self._dispatch(test, started_at)
        completed_at = self._clock.now()

        result = TestResult(
            id=new_id(),
            tenant_id=run.tenant_id,
            test_run_id=run.id,
            test_id=test.id,
            control_id=test.control_id,
            status=outcome.status,
            severity=test.severity,
            started_at=started_at,
            message=outcome.message,
            details=dict(outcome.details or {}),
            error_message=outcome.error_message,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
        )

        await self._repo.insert_result(result)
        await self._repo.increment_run_counter(run.tenant_id, run.id, result.status)
        run.counters.record(result.status)

        next_run_at = self._evaluator.next_fire(test.schedule, completed_at)
        await self._repo.advance_test_schedule(test.tenant_id, test.id, completed_at, next_run_at)
        test.last_run_at = completed_at
        test.next_run_at = next_run_at

        if result.is_failing and self._failure_handler is not None:
            alert_id = await self._failure_handler.maybe_generate(run.tenant_id, test, result)
            if alert_id:
                result.alert_generated = True
                result.alert_id = alert_id

        return result

    async def _dispatch(self, test: Test, started_at: datetime) -> ExecutionOutcome:
        """Run a test through its adapter, applying deadline and retry policy."""
        if test.schedule.is_interval == test.schedule.is_cron:
            return ExecutionOutcome(status=ResultStatus.ERROR, error_message=INVALID_SCHEDULE)

        adapter = self._registry.resolve(test.test_type)
        if adapter is None:
            logger.warning(
                "No executor registered for test type",
                extra={"test_id": test.id, "test_type": test.test_type}
            )
            return ExecutionOutcome(status=ResultStatus.ERROR, error_message=NO_EXECUTOR_FOR_TYPE)

        deadline = started_at + timedelta(seconds=test.timeout_seconds)
        attempt = 0

        while True:
            remaining = (deadline - self._clock.now()).total_seconds()
            if remaining <= 0:
                return ExecutionOutcome(status=ResultStatus.ERROR, error_message=DEADLINE_EXCEEDED)

            try:
                outcome = await asyncio.wait_for(
                    adapter.execute(dict(test.config), deadline),
                    timeout=remaining
                )
            except asyncio.TimeoutError:
                return ExecutionOutcome(status=ResultStatus.ERROR, error_message=DEADLINE_EXCEEDED)
            except TransientError as e:
                if attempt < test.retry_count:
                    attempt += 1
                    logger.info(
                        "Retrying test after transient failure",
                        extra={"test_id": test.id, "attempt": attempt, "error": str(e)}
                    )
                    await self._clock.sleep(test.retry_delay_seconds)
                    continue
                return ExecutionOutcome(
                    status=ResultStatus.ERROR,
                    error_message=str(e) or "transient_error"
                )
            except Exception as e:
                logger.warning(
                    "Executor adapter failed",
                    extra={"test_id": test.id, "test_type": test.test_type, "error": str(e)}
                )
                return ExecutionOutcome(
                    status=ResultStatus.ERROR,
                    error_message=str(e) or type(e).__name__
                )

            if not isinstance(outcome, ExecutionOutcome) or outcome.status not in VALID_RESULT_STATUSES:
                verdict = getattr(outcome, "status", None)
                return ExecutionOutcome(
                    status=ResultStatus.ERROR,
                    error_message=f"invalid_status: {verdict}"
                )
            return outcome


class TestDefinitionService:
    """
    Service for test definitions and their status lifecycle.

    Activating a test schedules it for the next tick; pausing or deprecating
    it takes it out of scheduling.
    """
    def __init__(
        self,
        repository: IMonitoringRepository,
        clock: Clock,
        evaluator: Optional[ScheduleEvaluator] = None,
        default_timeout_seconds: int = 60,
        default_retry_count: int = 0
    ):
        self._repo = repository
        self._clock = clock
        self._evaluator = evaluator or ScheduleEvaluator()
        self._default_timeout_seconds = default_timeout_seconds
        self._default_retry_count = default_retry_count

    async def create_test(self, tenant_id: str, dto: TestCreateDTO) -> Test:
        """
        Create a draft test.

        Raises:
            ConfigurationException: unknown test type or bad schedule
            ConflictException: identifier already used in the tenant
        """
        if dto.test_type not in VALID_TEST_TYPES:
            raise ConfigurationException(
                f"Unknown test type: {dto.test_type}",
                {"valid_types": VALID_TEST_TYPES}
            )

        schedule = Schedule(
            interval_minutes=dto.interval_minutes,
            cron_expression=dto.cron_expression.strip() if dto.cron_expression else None,
        )
        schedule.validate()

        if await self._repo.identifier_exists(tenant_id, dto.identifier):
            raise ConflictException(
                "A test with this identifier already exists",
                {"identifier": dto.identifier}
            )

        now = self._clock.now()
        test = Test(
            id=new_id(),
            tenant_id=tenant_id,
            identifier=dto.identifier,
            title=dto.title,
            description=dto.description,
            test_type=dto.test_type,
            severity=dto.severity,
            status=TestStatus.DRAFT,
            control_id=dto.control_id,
            schedule=schedule,
            timeout_seconds=dto.timeout_seconds or self._default_timeout_seconds,
            retry_count=self._default_retry_count if dto.retry_count is None else dto.retry_count,
            retry_delay_seconds=dto.retry_delay_seconds,
            config=dict(dto.config),
            tags=list(dto.tags),
            created_at=now,
        )
        await self._repo.insert_test(test)

        logger.info(
            "Test created",
            extra={"tenant_id": tenant_id, "test_id": test.id, "identifier": test.identifier}
        )
        return test

    async def get_test(self, tenant_id: str, test_id: str) -> Test:
        test = await self._repo.get_test(tenant_id, test_id)
        if test is None:
            raise ResourceNotFoundException("test", test_id)
        return test

    async def update_test(self, tenant_id: str, test_id: str, dto: TestUpdateDTO) -> Test:
        """
        Change the fields present in `dto`.

        Giving one schedule form replaces the other. An active test whose
        schedule changed is rescheduled from now.

        Raises:
            ValidationException: nothing to update
            ResourceNotFoundException: unknown test
            ConfigurationException: unknown test type or bad schedule
        """
        changes = dto.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationException("No fields to update")

        test = await self.get_test(tenant_id, test_id)

        if "test_type" in changes and changes["test_type"] not in VALID_TEST_TYPES:
            raise ConfigurationException(
                f"Unknown test type: {changes['test_type']}",
                {"valid_types": VALID_TEST_TYPES}
            )

        schedule = test.schedule
        if "interval_minutes" in changes or "cron_expression" in changes:
            cron = changes.pop("cron_expression", None)
            schedule = Schedule(
                interval_minutes=changes.pop("interval_minutes", None),
                cron_expression=cron.strip() if cron else None,
            )
            schedule.validate()

        for name, value in changes.items():
            setattr(test, name, value)

        now = self._clock.now()
        if schedule != test.schedule:
            test.schedule = schedule
            if test.status == TestStatus.ACTIVE:
                test.next_run_at = self._evaluator.next_fire(schedule, now)

        await self._repo.update_test(test, now)

        logger.info(
            "Test updated",
            extra={"tenant_id": tenant_id, "test_id": test_id, "fields": sorted(dto.model_fields_set)}
        )
        return test

    async def change_status(self, tenant_id: str, test_id: str, new_status: str) -> Test:
        """
        Move a test along its lifecycle.

        Raises:
            ResourceNotFoundException: unknown test
            InvalidTransitionException: transition not allowed
        """
        test = await self.get_test(tenant_id, test_id)
        test.check_transition(new_status)

        next_run_at = self._clock.now() if new_status == TestStatus.ACTIVE else None
        await self._repo.update_test_status(tenant_id, test_id, new_status, next_run_at)

        logger.info(
            "Test status changed",
            extra={
                "tenant_id": tenant_id,
                "test_id": test_id,
                "from_status": test.status,
                "to_status": new_status,
            }
        )
        test.status = new_status
        test.next_run_at = next_run_at
        return test


def _elapsed_ms(started_at: Optional[datetime], completed_at: datetime) -> int:
    """Milliseconds between two instants, never less than 1."""
    if started_at is None:
        return 1
    return max(1, int((completed_at - started_at).total_seconds() * 1000))
