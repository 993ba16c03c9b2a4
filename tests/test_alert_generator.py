"""Tests for turning failing results into alerts."""

from datetime import timedelta

import pytest

from grc_monitor.config import AlertStatus, DeliveryStatus, ResultStatus, Severity
from tests.conftest import OTHER_TENANT, START, TENANT, make_result, seed_rule, seed_test


async def run_once(run_executor):
    """Trigger a manual run for the tenant and return its single result."""
    run = await run_executor.trigger_run(TENANT)
    _, [result] = await run_executor.get_run(TENANT, run.id)
    return result


async def alerts_for(alert_repo, test, rule) -> int:
    return await alert_repo.count_recent_alerts(TENANT, test.id, rule.id, START - timedelta(days=365))


class AlertGenerationTests:
    @pytest.mark.asyncio()
    async def test_failure_generates_alert(self, run_executor, monitoring_repo, alert_repo, stub_adapter) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        test = await seed_test(monitoring_repo)
        rule = await seed_rule(
            alert_repo, match_severities=[], cooldown_minutes=0, alert_severity=Severity.HIGH, sla_hours=4
        )

        [run] = await run_executor.poll_and_run()
        _, [result] = await run_executor.get_run(TENANT, run.id)

        assert result.status == ResultStatus.FAIL
        assert result.alert_generated is True
        alert = await alert_repo.get_alert(TENANT, result.alert_id)
        assert alert.status == AlertStatus.OPEN
        assert alert.severity == Severity.HIGH
        assert alert.sla_deadline == START + timedelta(hours=4)
        assert alert.sla_breached is False
        assert alert.test_result_id == result.id
        assert alert.test_id == test.id
        assert alert.alert_rule_id == rule.id
        assert alert.control_id == test.control_id
        assert alert.alert_number == 1

        stored_rule = await alert_repo.get_rule(TENANT, rule.id)
        assert stored_rule.alerts_generated == 1
        assert stored_rule.last_triggered_at == START

    @pytest.mark.asyncio()
    async def test_passing_result_never_alerts(self, run_executor, monitoring_repo, alert_repo) -> None:
        test = await seed_test(monitoring_repo)
        rule = await seed_rule(alert_repo, match_result_statuses=[])

        result = await run_once(run_executor)

        assert result.alert_generated is False
        assert await alerts_for(alert_repo, test, rule) == 0

    @pytest.mark.asyncio()
    async def test_no_rules_no_alert(self, run_executor, monitoring_repo, stub_adapter) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)

        result = await run_once(run_executor)

        assert result.alert_generated is False
        assert result.alert_id is None

    @pytest.mark.asyncio()
    async def test_error_needs_explicit_match(self, run_executor, monitoring_repo, alert_repo, stub_adapter) -> None:
        stub_adapter.script = [ResultStatus.ERROR, ResultStatus.ERROR]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, name="fail-only")

        assert (await run_once(run_executor)).alert_generated is False

        await seed_rule(alert_repo, name="errors", match_result_statuses=[ResultStatus.ERROR])

        assert (await run_once(run_executor)).alert_generated is True

    @pytest.mark.asyncio()
    async def test_rule_actions_applied(self, run_executor, monitoring_repo, alert_repo, stub_adapter) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo, identifier="IAM-001", tags=["iam", "sox"])
        await seed_rule(
            alert_repo,
            alert_title_template="{{test.identifier}} is {{result.status}}",
            auto_assign_to="secops@example.com",
            delivery_channels=["in_app", "slack", "in_app"],
        )

        result = await run_once(run_executor)
        alert = await alert_repo.get_alert(TENANT, result.alert_id)

        assert alert.title == "IAM-001 is fail"
        assert alert.assigned_to == "secops@example.com"
        assert alert.assigned_at == START
        assert alert.sla_deadline is None
        assert alert.tags == ["iam", "sox"]

        deliveries = await alert_repo.list_pending_deliveries(10)
        assert sorted(job.channel for job in deliveries) == ["in_app", "slack"]
        assert {job.status for job in deliveries} == {DeliveryStatus.PENDING}
        assert {job.alert_id for job in deliveries} == {alert.id}

    @pytest.mark.asyncio()
    async def test_alert_numbers_increase_per_tenant(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL, ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo)

        first = await run_once(run_executor)
        second = await run_once(run_executor)

        numbers = [
            (await alert_repo.get_alert(TENANT, result.alert_id)).alert_number
            for result in (first, second)
        ]
        assert numbers == [1, 2]

    @pytest.mark.asyncio()
    async def test_cross_tenant_evaluation_refused(self, alert_generator, alert_repo, monitoring_repo) -> None:
        test = await seed_test(monitoring_repo)
        await seed_rule(alert_repo, OTHER_TENANT)

        alert_id = await alert_generator.maybe_generate(OTHER_TENANT, test, make_result(test, "run-1"))

        assert alert_id is None


class CooldownTests:
    @pytest.mark.asyncio()
    async def test_cooldown_suppresses_second_alert(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter, clock
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL, ResultStatus.FAIL]
        test = await seed_test(monitoring_repo)
        rule = await seed_rule(alert_repo, cooldown_minutes=30)

        first = await run_once(run_executor)
        clock.advance(minutes=3)
        second = await run_once(run_executor)

        assert first.alert_generated is True
        assert second.alert_generated is False
        assert await alerts_for(alert_repo, test, rule) == 1

    @pytest.mark.asyncio()
    async def test_alert_again_after_cooldown(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter, clock
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL, ResultStatus.FAIL]
        test = await seed_test(monitoring_repo)
        rule = await seed_rule(alert_repo, cooldown_minutes=30)

        await run_once(run_executor)
        clock.advance(minutes=31)
        await run_once(run_executor)

        assert await alerts_for(alert_repo, test, rule) == 2

    @pytest.mark.asyncio()
    async def test_cooldown_does_not_fall_through(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter, clock
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL, ResultStatus.FAIL]
        test = await seed_test(monitoring_repo)
        primary = await seed_rule(alert_repo, priority=1, cooldown_minutes=30)
        backup = await seed_rule(alert_repo, priority=2)

        await run_once(run_executor)
        clock.advance(minutes=3)
        second = await run_once(run_executor)

        assert second.alert_generated is False
        assert await alerts_for(alert_repo, test, primary) == 1
        assert await alerts_for(alert_repo, test, backup) == 0


class RulePriorityTests:
    @pytest.mark.asyncio()
    async def test_lowest_priority_value_wins(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, name="R2", priority=2, alert_severity=Severity.LOW)
        first = await seed_rule(alert_repo, name="R1", priority=1, alert_severity=Severity.CRITICAL)

        result = await run_once(run_executor)
        alert = await alert_repo.get_alert(TENANT, result.alert_id)

        assert alert.severity == Severity.CRITICAL
        assert alert.alert_rule_id == first.id

    @pytest.mark.asyncio()
    async def test_priority_tie_goes_to_oldest_rule(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, name="newer", created_at=START - timedelta(hours=1))
        older = await seed_rule(alert_repo, name="older", created_at=START - timedelta(days=7))

        result = await run_once(run_executor)
        alert = await alert_repo.get_alert(TENANT, result.alert_id)

        assert alert.alert_rule_id == older.id

    @pytest.mark.asyncio()
    async def test_disabled_rule_is_skipped(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, priority=1, enabled=False, alert_severity=Severity.CRITICAL)
        enabled = await seed_rule(alert_repo, priority=2, alert_severity=Severity.LOW)

        result = await run_once(run_executor)
        alert = await alert_repo.get_alert(TENANT, result.alert_id)

        assert alert.alert_rule_id == enabled.id


class ConsecutiveFailuresTests:
    @pytest.mark.asyncio()
    async def test_alert_only_after_streak(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter, clock
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL] * 3
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, consecutive_failures=3)

        generated = []
        for _ in range(3):
            generated.append((await run_once(run_executor)).alert_generated)
            clock.advance(minutes=5)

        assert generated == [False, False, True]

    @pytest.mark.asyncio()
    async def test_pass_breaks_streak(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter, clock
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL, ResultStatus.PASS, ResultStatus.FAIL, ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, consecutive_failures=3)

        generated = []
        for _ in range(4):
            generated.append((await run_once(run_executor)).alert_generated)
            clock.advance(minutes=5)

        assert generated == [False, False, False, False]

    @pytest.mark.asyncio()
    async def test_unmet_streak_falls_through_to_next_rule(
        self, run_executor, monitoring_repo, alert_repo, stub_adapter
    ) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)
        await seed_rule(alert_repo, priority=1, consecutive_failures=3)
        fallback = await seed_rule(alert_repo, priority=2)

        result = await run_once(run_executor)
        alert = await alert_repo.get_alert(TENANT, result.alert_id)

        assert alert.alert_rule_id == fallback.id
