"""
Monitoring Controllers (API Routes)
===================================

FastAPI routes for test definitions and test runs.

Controllers are thin - they delegate to application services.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from grc_monitor.monitoring.application import (
    RunExecutor,
    TestDefinitionService,
    TestCreateDTO,
    TestUpdateDTO,
    TestStatusChangeDTO,
    TriggerRunRequest,
    TestResponse,
    TestRunResponse,
    TestResultResponse,
    TestRunDetailResponse,
    TestRunListResponse,
    TestResultListResponse,
)
from grc_monitor.shared.api.dependencies import app_service, get_actor, get_tenant_id, split_csv

router = APIRouter(prefix="/monitoring", tags=["Monitoring"])


# ========== Dependencies ==========

async def get_run_executor(request: Request) -> RunExecutor:
    return app_service(request, "run_executor")


async def get_test_service(request: Request) -> TestDefinitionService:
    return app_service(request, "test_service")


# ========== Route Handlers ==========

@router.post(
    "/tests",
    response_model=TestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a test definition",
    description="""
    Create a compliance test in `draft` status.

    Exactly one of `interval_minutes` (1..10080) or `cron_expression`
    (5 fields) must be given. The test is scheduled once it is activated.
    """
)
async def create_test(
    body: TestCreateDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: TestDefinitionService = Depends(get_test_service)
):
    test = await service.create_test(tenant_id, body)
    return TestResponse.from_entity(test)


@router.get("/tests/{test_id}", response_model=TestResponse, summary="Get a test definition")
async def get_test(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: TestDefinitionService = Depends(get_test_service)
):
    return TestResponse.from_entity(await service.get_test(tenant_id, test_id))


@router.patch(
    "/tests/{test_id}",
    response_model=TestResponse,
    summary="Update a test definition",
    description="""
    Change only the fields in the body. The identifier cannot change.

    Setting `interval_minutes` clears `cron_expression` and the other way
    round. An active test whose schedule changed is rescheduled from now.
    """
)
async def update_test(
    test_id: str,
    body: TestUpdateDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: TestDefinitionService = Depends(get_test_service)
):
    test = await service.update_test(tenant_id, test_id, body)
    return TestResponse.from_entity(test)


@router.post(
    "/tests/{test_id}/status",
    response_model=TestResponse,
    summary="Change test status",
    description="""
    Move a test along its lifecycle:
    `draft -> active`, `active <-> paused`, `active|paused -> deprecated`.

    Activation schedules the first run for the next worker tick.
    """
)
async def change_test_status(
    test_id: str,
    body: TestStatusChangeDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: TestDefinitionService = Depends(get_test_service)
):
    test = await service.change_status(tenant_id, test_id, body.status)
    return TestResponse.from_entity(test)


@router.post(
    "/runs",
    response_model=TestRunDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Trigger a test run",
    description="""
    Run tests now, outside their schedule.

    Without `test_ids` every active test of the organization runs. Answers
    409 when the organization already has a pending or running run.
    """
)
async def trigger_run(
    body: TriggerRunRequest,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    executor: RunExecutor = Depends(get_run_executor)
):
    run = await executor.trigger_run(
        tenant_id,
        test_ids=body.test_ids,
        triggered_by=actor,
        trigger_type=body.trigger_type,
        trigger_metadata=body.trigger_metadata,
    )
    run, results = await executor.get_run(tenant_id, run.id)
    return TestRunDetailResponse(
        run=TestRunResponse.from_entity(run),
        results=[TestResultResponse.from_entity(result) for result in results],
    )


@router.get(
    "/runs",
    response_model=TestRunListResponse,
    summary="List test runs",
    description="Newest first. `status` and `trigger_type` take comma-separated values."
)
async def list_runs(
    run_status: Optional[str] = Query(None, alias="status", description="Filter by run status"),
    trigger_type: Optional[str] = Query(None, description="Filter by trigger type"),
    limit: int = Query(20, ge=1, le=100, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    tenant_id: str = Depends(get_tenant_id),
    executor: RunExecutor = Depends(get_run_executor)
):
    filters = {}
    if run_status:
        filters["status"] = split_csv(run_status)
    if trigger_type:
        filters["trigger_type"] = split_csv(trigger_type)

    runs, total = await executor.list_runs(tenant_id, filters, limit=limit, offset=offset)
    return TestRunListResponse(
        runs=[TestRunResponse.from_entity(run) for run in runs],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/runs/{run_id}/results",
    response_model=TestResultListResponse,
    summary="List results of a test run"
)
async def list_run_results(
    run_id: str,
    result_status: Optional[str] = Query(None, alias="status", description="Filter by result status"),
    severity: Optional[str] = Query(None, description="Filter by severity"),
    limit: int = Query(20, ge=1, le=100, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    tenant_id: str = Depends(get_tenant_id),
    executor: RunExecutor = Depends(get_run_executor)
):
    filters = {}
    if result_status:
        filters["status"] = split_csv(result_status)
    if severity:
        filters["severity"] = split_csv(severity)

    results, total = await executor.list_results(tenant_id, run_id, filters, limit=limit, offset=offset)
    return TestResultListResponse(
        results=[TestResultResponse.from_entity(result) for result in results],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/runs/{run_id}", response_model=TestRunDetailResponse, summary="Get a test run")
async def get_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant_id),
    executor: RunExecutor = Depends(get_run_executor)
):
    run, results = await executor.get_run(tenant_id, run_id)
    return TestRunDetailResponse(
        run=TestRunResponse.from_entity(run),
        results=[TestResultResponse.from_entity(result) for result in results],
    )


@router.post("/runs/{run_id}/cancel", response_model=TestRunResponse, summary="Cancel a test run")
async def cancel_run(
    run_id: str,
    tenant_id: str = Depends(get_tenant_id),
    executor: RunExecutor = Depends(get_run_executor)
):
    run = await executor.cancel_run(tenant_id, run_id)
    return TestRunResponse.from_entity(run)
