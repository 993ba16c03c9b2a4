"""API tests through the ASGI app with services wired to the test database."""

from datetime import timedelta
from typing import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from grc_monitor.config import AlertStatus, ResultStatus, RunStatus, Settings, TestStatus
from grc_monitor.main import configure_services, create_app
from tests.conftest import OTHER_TENANT, START, TENANT, running_run, seed_alert, seed_test


@pytest.fixture()
def app(session_maker, clock, registry) -> FastAPI:
    application = create_app()
    configure_services(application, session_maker, Settings(), clock=clock, registry=registry, senders={})
    return application


@pytest.fixture()
async def client(app) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", headers={"X-Tenant-ID": TENANT}
    ) as http_client:
        yield http_client


TEST_BODY = {
    "identifier": "IAM-001",
    "title": "MFA enforced for admins",
    "test_type": "custom",
    "severity": "high",
    "control_id": "AC-2",
    "interval_minutes": 15,
    "tags": ["iam"],
}

RULE_BODY = {
    "name": "high-severity",
    "alert_severity": "high",
    "delivery_channels": ["in_app"],
    "sla_hours": 4,
}


class MonitoringApiTests:
    @pytest.mark.asyncio()
    async def test_create_activate_and_run(self, client) -> None:
        created = await client.post("/monitoring/tests", json=TEST_BODY)
        assert created.status_code == 201
        test = created.json()
        assert test["status"] == TestStatus.DRAFT
        assert test["interval_minutes"] == 15

        activated = await client.post(f"/monitoring/tests/{test['id']}/status", json={"status": "active"})
        assert activated.status_code == 200
        assert activated.json()["status"] == TestStatus.ACTIVE

        triggered = await client.post("/monitoring/runs", json={}, headers={"X-User-ID": "auditor"})
        assert triggered.status_code == 201
        detail = triggered.json()
        assert detail["run"]["status"] == RunStatus.COMPLETED
        assert detail["run"]["run_number"] == 1
        assert detail["run"]["triggered_by"] == "auditor"
        assert detail["run"]["passed_tests"] == 1
        assert [r["status"] for r in detail["results"]] == [ResultStatus.PASS]

        fetched = await client.get(f"/monitoring/runs/{detail['run']['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["run"]["id"] == detail["run"]["id"]

    @pytest.mark.asyncio()
    async def test_get_test_is_tenant_scoped(self, client) -> None:
        test = (await client.post("/monitoring/tests", json=TEST_BODY)).json()

        own = await client.get(f"/monitoring/tests/{test['id']}")
        foreign = await client.get(f"/monitoring/tests/{test['id']}", headers={"X-Tenant-ID": OTHER_TENANT})

        assert own.status_code == 200
        assert foreign.status_code == 404
        assert foreign.json()["error_type"] == "ResourceNotFoundException"

    @pytest.mark.asyncio()
    async def test_duplicate_identifier_conflicts(self, client) -> None:
        await client.post("/monitoring/tests", json=TEST_BODY)

        response = await client.post("/monitoring/tests", json=TEST_BODY)

        assert response.status_code == 409

    @pytest.mark.asyncio()
    async def test_invalid_schedule_is_bad_request(self, client) -> None:
        response = await client.post("/monitoring/tests", json={**TEST_BODY, "cron_expression": "0 * * * *"})

        assert response.status_code == 400
        assert response.json()["error_type"] == "ConfigurationException"

    @pytest.mark.asyncio()
    async def test_invalid_transition_is_unprocessable(self, client) -> None:
        test = (await client.post("/monitoring/tests", json=TEST_BODY)).json()

        response = await client.post(f"/monitoring/tests/{test['id']}/status", json={"status": "paused"})

        assert response.status_code == 422
        assert response.json()["error_type"] == "InvalidTransitionException"

    @pytest.mark.asyncio()
    async def test_run_in_progress_conflicts(self, client, monitoring_repo) -> None:
        await seed_test(monitoring_repo)
        await monitoring_repo.insert_run(running_run())

        response = await client.post("/monitoring/runs", json={})

        assert response.status_code == 409
        assert response.json()["error_type"] == "RunInProgressException"

    @pytest.mark.asyncio()
    async def test_nothing_to_run_is_bad_request(self, client) -> None:
        response = await client.post("/monitoring/runs", json={})

        assert response.status_code == 400

    @pytest.mark.asyncio()
    async def test_cancel_run(self, client, monitoring_repo) -> None:
        run = running_run()
        await monitoring_repo.insert_run(run)

        cancelled = await client.post(f"/monitoring/runs/{run.id}/cancel")
        again = await client.post(f"/monitoring/runs/{run.id}/cancel")

        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == RunStatus.CANCELLED
        assert again.status_code == 422

    @pytest.mark.asyncio()
    async def test_unknown_run_not_found(self, client) -> None:
        response = await client.get("/monitoring/runs/does-not-exist")

        assert response.status_code == 404

    @pytest.mark.asyncio()
    async def test_patch_test(self, client, clock) -> None:
        test = (await client.post("/monitoring/tests", json=TEST_BODY)).json()
        await client.post(f"/monitoring/tests/{test['id']}/status", json={"status": "active"})
        clock.advance(minutes=1)

        response = await client.patch(
            f"/monitoring/tests/{test['id']}",
            json={"cron_expression": "0 9 * * FRI-SUN", "title": "MFA on every admin"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["title"] == "MFA on every admin"
        assert body["interval_minutes"] is None
        assert body["cron_expression"] == "0 9 * * FRI-SUN"
        # Monday 09:01, so the next slot is Friday morning
        assert body["next_run_at"].startswith("2026-03-06T09:00:00")

    @pytest.mark.asyncio()
    async def test_patch_test_rejections(self, client) -> None:
        test = (await client.post("/monitoring/tests", json=TEST_BODY)).json()
        url = f"/monitoring/tests/{test['id']}"

        both = await client.patch(url, json={"interval_minutes": 5, "cron_expression": "* * * * *"})
        unknown_type = await client.patch(url, json={"test_type": "telepathy"})
        empty = await client.patch(url, json={})
        out_of_bounds = await client.patch(url, json={"timeout_seconds": 0})
        foreign = await client.patch(url, json={"title": "x"}, headers={"X-Tenant-ID": OTHER_TENANT})

        assert both.status_code == 400
        assert both.json()["error_type"] == "ConfigurationException"
        assert unknown_type.status_code == 400
        assert empty.status_code == 400
        assert out_of_bounds.status_code == 422
        assert foreign.status_code == 404

    @pytest.mark.asyncio()
    async def test_list_runs_and_results(self, client, monitoring_repo) -> None:
        await seed_test(monitoring_repo, config={"verdict": ResultStatus.FAIL})
        await seed_test(monitoring_repo)
        run = (await client.post("/monitoring/runs", json={})).json()["run"]

        runs = await client.get("/monitoring/runs", params={"trigger_type": "manual,webhook"})
        assert runs.status_code == 200
        assert runs.json()["total_count"] == 1
        assert runs.json()["runs"][0]["id"] == run["id"]

        foreign = await client.get("/monitoring/runs", headers={"X-Tenant-ID": OTHER_TENANT})
        assert foreign.json()["total_count"] == 0

        results = await client.get(f"/monitoring/runs/{run['id']}/results", params={"status": "fail"})
        assert results.status_code == 200
        assert results.json()["total_count"] == 1
        assert [r["status"] for r in results.json()["results"]] == [ResultStatus.FAIL]

        missing = await client.get("/monitoring/runs/does-not-exist/results")
        assert missing.status_code == 404

        too_many = await client.get("/monitoring/runs", params={"limit": 101})
        assert too_many.status_code == 422


class AlertingApiTests:
    @pytest.mark.asyncio()
    async def test_rule_turns_failure_into_alert(self, client, monitoring_repo, stub_adapter) -> None:
        stub_adapter.script = [ResultStatus.FAIL]
        await seed_test(monitoring_repo)

        rule = await client.post("/alerts/rules", json=RULE_BODY)
        assert rule.status_code == 201
        assert rule.json()["match_result_statuses"] == ["fail"]

        detail = (await client.post("/monitoring/runs", json={})).json()
        [result] = detail["results"]
        assert result["alert_generated"] is True

        alert = await client.get(f"/alerts/{result['alert_id']}")
        assert alert.status_code == 200
        body = alert.json()
        assert body["status"] == AlertStatus.OPEN
        assert body["severity"] == "high"
        assert body["alert_rule_id"] == rule.json()["id"]
        assert body["alert_number"] == 1

    @pytest.mark.asyncio()
    async def test_duplicate_rule_name_conflicts(self, client) -> None:
        await client.post("/alerts/rules", json=RULE_BODY)

        response = await client.post("/alerts/rules", json=RULE_BODY)

        assert response.status_code == 409

    @pytest.mark.asyncio()
    async def test_plain_http_webhook_rejected(self, client) -> None:
        response = await client.post(
            "/alerts/rules",
            json={**RULE_BODY, "delivery_channels": ["webhook"], "webhook_url": "http://example.com/hook"},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio()
    async def test_alert_lifecycle(self, client, alert_repo) -> None:
        alert = await seed_alert(alert_repo)

        assigned = await client.post(
            f"/alerts/{alert.id}/assign",
            json={"assigned_to": "analyst@example.com"},
            headers={"X-User-ID": "lead@example.com"},
        )
        assert assigned.status_code == 200
        assert assigned.json()["status"] == AlertStatus.ACKNOWLEDGED

        in_progress = await client.post(f"/alerts/{alert.id}/status", json={"status": "in_progress"})
        assert in_progress.json()["status"] == AlertStatus.IN_PROGRESS

        resolved = await client.post(f"/alerts/{alert.id}/resolve", json={"resolution_notes": "Fixed"})
        assert resolved.status_code == 200
        assert resolved.json()["status"] == AlertStatus.RESOLVED

        closed = await client.post(f"/alerts/{alert.id}/close")
        assert closed.status_code == 200
        assert closed.json()["status"] == AlertStatus.CLOSED
        assert closed.json()["resolution_notes"] == "Fixed"

        again = await client.post(f"/alerts/{alert.id}/close", json={"resolution_notes": "Duplicate"})
        assert again.status_code == 422

        stored = await alert_repo.get_alert(TENANT, alert.id)
        assert stored.assigned_by == "lead@example.com"

    @pytest.mark.asyncio()
    async def test_suppress_window_bounds(self, client, alert_repo) -> None:
        alert = await seed_alert(alert_repo)
        reason = "Accepted risk until the vendor patch ships"

        too_far = await client.post(
            f"/alerts/{alert.id}/suppress",
            json={"suppressed_until": (START + timedelta(days=91)).isoformat(), "suppression_reason": reason},
        )
        allowed = await client.post(
            f"/alerts/{alert.id}/suppress",
            json={"suppressed_until": (START + timedelta(days=30)).isoformat(), "suppression_reason": reason},
        )

        assert too_far.status_code == 400
        assert allowed.status_code == 200
        assert allowed.json()["status"] == AlertStatus.SUPPRESSED

    @pytest.mark.asyncio()
    async def test_assigning_closed_alert_is_unprocessable(self, client, alert_repo) -> None:
        alert = await seed_alert(alert_repo, status=AlertStatus.CLOSED)

        response = await client.post(f"/alerts/{alert.id}/assign", json={"assigned_to": "analyst"})

        assert response.status_code == 422
        assert response.json()["error_type"] == "DomainException"

    @pytest.mark.asyncio()
    async def test_unknown_alert_not_found(self, client) -> None:
        response = await client.get("/alerts/does-not-exist")

        assert response.status_code == 404

    @pytest.mark.asyncio()
    async def test_rule_crud(self, client, alert_repo) -> None:
        rule = (await client.post("/alerts/rules", json=RULE_BODY)).json()
        await client.post("/alerts/rules", json={**RULE_BODY, "name": "other"})
        alert = await seed_alert(alert_repo, alert_rule_id=rule["id"])

        listed = await client.get("/alerts/rules")
        assert listed.status_code == 200
        assert listed.json()["total_count"] == 2

        fetched = await client.get(f"/alerts/rules/{rule['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "high-severity"

        patched = await client.patch(f"/alerts/rules/{rule['id']}", json={"enabled": False, "sla_hours": 8})
        assert patched.status_code == 200
        assert patched.json()["enabled"] is False
        assert patched.json()["sla_hours"] == 8

        enabled_only = await client.get("/alerts/rules", params={"enabled": "true"})
        assert [r["name"] for r in enabled_only.json()["rules"]] == ["other"]

        deleted = await client.delete(f"/alerts/rules/{rule['id']}")
        assert deleted.status_code == 204
        assert (await client.get(f"/alerts/rules/{rule['id']}")).status_code == 404
        assert (await client.delete(f"/alerts/rules/{rule['id']}")).status_code == 404
        assert (await client.get(f"/alerts/{alert.id}")).json()["alert_rule_id"] is None

    @pytest.mark.asyncio()
    async def test_rule_update_rejections(self, client) -> None:
        rule = (await client.post("/alerts/rules", json=RULE_BODY)).json()
        await client.post("/alerts/rules", json={**RULE_BODY, "name": "taken"})
        url = f"/alerts/rules/{rule['id']}"

        renamed = await client.patch(url, json={"name": "taken"})
        bad_header = await client.patch(url, json={"webhook_headers": {"X-Custom-Team": "équipe"}})
        plain_http = await client.patch(url, json={"webhook_url": "http://example.com/hook"})
        empty = await client.patch(url, json={})
        foreign = await client.patch(url, json={"enabled": False}, headers={"X-Tenant-ID": OTHER_TENANT})

        assert renamed.status_code == 409
        assert bad_header.status_code == 422
        assert plain_http.status_code == 422
        assert empty.status_code == 400
        assert foreign.status_code == 404

    @pytest.mark.asyncio()
    async def test_list_alerts(self, client, alert_repo) -> None:
        critical = await seed_alert(alert_repo, severity="critical", created_at=START - timedelta(minutes=5))
        unassigned = await seed_alert(alert_repo, created_at=START - timedelta(minutes=1))
        await seed_alert(alert_repo, status=AlertStatus.CLOSED, assigned_to="analyst")
        await seed_alert(alert_repo, OTHER_TENANT)

        everything = await client.get("/alerts")
        assert everything.status_code == 200
        assert everything.json()["total_count"] == 3

        open_alerts = await client.get("/alerts", params={"status": "open,acknowledged"})
        assert [a["id"] for a in open_alerts.json()["alerts"]] == [unassigned.id, critical.id]

        by_severity = await client.get("/alerts", params={"severity": "critical"})
        assert [a["id"] for a in by_severity.json()["alerts"]] == [critical.id]

        nobody = await client.get("/alerts", params={"assigned_to": "unassigned"})
        assert nobody.json()["total_count"] == 2

        page = await client.get("/alerts", params={"limit": 1, "offset": 1})
        assert page.json()["limit"] == 1
        assert len(page.json()["alerts"]) == 1

    @pytest.mark.asyncio()
    async def test_redeliver_and_list_deliveries(self, client, alert_repo) -> None:
        alert = await seed_alert(alert_repo, delivery_channels=["slack"])
        [job] = await alert_repo.list_deliveries(TENANT, alert.id)
        await alert_repo.record_delivery_failure(job.id, "webhook returned 500", give_up=True)

        before = await client.get(f"/alerts/{alert.id}/deliveries")
        assert before.status_code == 200
        assert before.json()[0]["status"] == "failed"

        redelivered = await client.post(f"/alerts/{alert.id}/redeliver")
        assert redelivered.status_code == 200
        [delivery] = redelivered.json()
        assert delivery["status"] == "pending"
        assert delivery["attempts"] == 0

        extra = await client.post(f"/alerts/{alert.id}/redeliver", json={"channels": ["in_app"]})
        assert [d["channel"] for d in extra.json()] == ["in_app", "slack"]

        bad_channel = await client.post(f"/alerts/{alert.id}/redeliver", json={"channels": ["pager"]})
        assert bad_channel.status_code == 422
        missing = await client.post("/alerts/does-not-exist/redeliver")
        assert missing.status_code == 404


class ApiPlumbingTests:
    @pytest.mark.asyncio()
    async def test_missing_tenant_header_rejected(self, client) -> None:
        response = await client.get("/alerts/anything", headers={"X-Tenant-ID": ""})

        assert response.status_code == 400

    @pytest.mark.asyncio()
    async def test_overlong_tenant_header_rejected(self, client) -> None:
        response = await client.get("/alerts/anything", headers={"X-Tenant-ID": "t" * 65})

        assert response.status_code == 400

    @pytest.mark.asyncio()
    async def test_correlation_id_echoed(self, client) -> None:
        response = await client.get("/health", headers={"X-Correlation-ID": "corr-123"})

        assert response.headers["X-Correlation-ID"] == "corr-123"

    @pytest.mark.asyncio()
    async def test_health_reports_registered_executors(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["checks"] == {"worker": "configured", "executors": ["custom"]}

    @pytest.mark.asyncio()
    async def test_unhandled_error_is_500(self, client, app, monkeypatch) -> None:
        async def broken(tenant_id, test_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(app.state.test_service, "get_test", broken)

        response = await client.get("/monitoring/tests/anything")

        assert response.status_code == 500
        assert response.json()["detail"] == "Internal server error"

    @pytest.mark.asyncio()
    async def test_unconfigured_service_is_503(self) -> None:
        transport = httpx.ASGITransport(app=create_app())
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as bare:
            response = await bare.get("/alerts/anything", headers={"X-Tenant-ID": TENANT})

        assert response.status_code == 503
