"""
Alerting Controllers (API Routes)
=================================

FastAPI routes for alert rules and the alert lifecycle.

Controllers are thin - they delegate to application services.
"""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, Response, status

from grc_monitor.alerting.application import (
    AlertLifecycleService,
    AlertRuleService,
    AlertRuleCreateDTO,
    AlertRuleUpdateDTO,
    AlertRedeliverDTO,
    AlertStatusChangeDTO,
    AlertAssignDTO,
    AlertResolveDTO,
    AlertSuppressDTO,
    AlertCloseDTO,
    AlertRuleResponse,
    AlertRuleListResponse,
    AlertResponse,
    AlertListResponse,
    DeliveryResponse,
)
from grc_monitor.shared.api.dependencies import app_service, get_actor, get_tenant_id, split_csv

router = APIRouter(prefix="/alerts", tags=["Alerting"])


# ========== Dependencies ==========

async def get_lifecycle_service(request: Request) -> AlertLifecycleService:
    return app_service(request, "alert_lifecycle_service")


async def get_rule_service(request: Request) -> AlertRuleService:
    return app_service(request, "alert_rule_service")


# ========== Route Handlers ==========

@router.post(
    "/rules",
    response_model=AlertRuleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an alert rule",
    description="""
    Create a rule that turns failing test results into alerts.

    Empty match lists match anything. `match_result_statuses` defaults to
    `["fail"]`. Rules are evaluated by ascending `priority` and the first
    match wins.
    """
)
async def create_rule(
    body: AlertRuleCreateDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertRuleService = Depends(get_rule_service)
):
    rule = await service.create_rule(tenant_id, body)
    return AlertRuleResponse.from_entity(rule)


@router.get("/rules", response_model=AlertRuleListResponse, summary="List alert rules")
async def list_rules(
    enabled: Optional[bool] = Query(None, description="Filter by enabled flag"),
    limit: int = Query(20, ge=1, le=100, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    tenant_id: str = Depends(get_tenant_id),
    service: AlertRuleService = Depends(get_rule_service)
):
    filters = {}
    if enabled is not None:
        filters["enabled"] = enabled

    rules, total = await service.list_rules(tenant_id, filters, limit=limit, offset=offset)
    return AlertRuleListResponse(
        rules=[AlertRuleResponse.from_entity(rule) for rule in rules],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/rules/{rule_id}", response_model=AlertRuleResponse, summary="Get an alert rule")
async def get_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertRuleService = Depends(get_rule_service)
):
    return AlertRuleResponse.from_entity(await service.get_rule(tenant_id, rule_id))


@router.patch(
    "/rules/{rule_id}",
    response_model=AlertRuleResponse,
    summary="Update an alert rule",
    description="Change only the fields in the body. The same checks as on create apply."
)
async def update_rule(
    rule_id: str,
    body: AlertRuleUpdateDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertRuleService = Depends(get_rule_service)
):
    rule = await service.update_rule(tenant_id, rule_id, body)
    return AlertRuleResponse.from_entity(rule)


@router.delete(
    "/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an alert rule",
    description="Alerts raised by the rule are kept and lose their link to it."
)
async def delete_rule(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertRuleService = Depends(get_rule_service)
):
    await service.delete_rule(tenant_id, rule_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description="""
    Newest first. `status` and `severity` take comma-separated values.
    `assigned_to=unassigned` lists alerts nobody owns.
    """
)
async def list_alerts(
    alert_status: Optional[str] = Query(None, alias="status", description="Filter by alert status"),
    severity: Optional[str] = Query(None, description="Filter by severity"),
    control_id: Optional[str] = Query(None, description="Filter by control"),
    test_id: Optional[str] = Query(None, description="Filter by originating test"),
    assigned_to: Optional[str] = Query(None, description="Filter by assignee"),
    sla_breached: Optional[bool] = Query(None, description="Filter by SLA breach flag"),
    limit: int = Query(20, ge=1, le=100, description="Results per page"),
    offset: int = Query(0, ge=0, description="Page offset"),
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    # Build filters
    filters = {}
    if alert_status:
        filters["status"] = split_csv(alert_status)
    if severity:
        filters["severity"] = split_csv(severity)
    if control_id:
        filters["control_id"] = control_id
    if test_id:
        filters["test_id"] = test_id
    if assigned_to:
        filters["assigned_to"] = None if assigned_to == "unassigned" else assigned_to
    if sla_breached is not None:
        filters["sla_breached"] = sla_breached

    alerts, total = await service.list_alerts(tenant_id, filters, limit=limit, offset=offset)
    return AlertListResponse(
        alerts=[AlertResponse.from_entity(alert) for alert in alerts],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{alert_id}", response_model=AlertResponse, summary="Get an alert")
async def get_alert(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    return AlertResponse.from_entity(await service.get_alert(tenant_id, alert_id))


@router.post("/{alert_id}/status", response_model=AlertResponse, summary="Change alert status")
async def change_alert_status(
    alert_id: str,
    body: AlertStatusChangeDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    alert = await service.change_status(tenant_id, alert_id, body.status)
    return AlertResponse.from_entity(alert)


@router.post(
    "/{alert_id}/assign",
    response_model=AlertResponse,
    summary="Assign an alert",
    description="Assigning an open alert also acknowledges it."
)
async def assign_alert(
    alert_id: str,
    body: AlertAssignDTO,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    alert = await service.assign(tenant_id, alert_id, body.assigned_to, assigned_by=actor)
    return AlertResponse.from_entity(alert)


@router.post("/{alert_id}/resolve", response_model=AlertResponse, summary="Resolve an alert")
async def resolve_alert(
    alert_id: str,
    body: AlertResolveDTO,
    tenant_id: str = Depends(get_tenant_id),
    actor: Optional[str] = Depends(get_actor),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    alert = await service.resolve(tenant_id, alert_id, body.resolution_notes, resolved_by=actor)
    return AlertResponse.from_entity(alert)


@router.post(
    "/{alert_id}/suppress",
    response_model=AlertResponse,
    summary="Suppress an alert",
    description="Suppress until a time at most 90 days ahead; the alert reopens when it passes."
)
async def suppress_alert(
    alert_id: str,
    body: AlertSuppressDTO,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    alert = await service.suppress(tenant_id, alert_id, body.suppressed_until, body.suppression_reason)
    return AlertResponse.from_entity(alert)


@router.post("/{alert_id}/close", response_model=AlertResponse, summary="Close an alert")
async def close_alert(
    alert_id: str,
    body: Optional[AlertCloseDTO] = Body(None),
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    notes = body.resolution_notes if body else None
    alert = await service.close(tenant_id, alert_id, notes)
    return AlertResponse.from_entity(alert)


@router.get(
    "/{alert_id}/deliveries",
    response_model=List[DeliveryResponse],
    summary="List alert deliveries"
)
async def list_deliveries(
    alert_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    jobs = await service.list_deliveries(tenant_id, alert_id)
    return [DeliveryResponse.from_entity(job) for job in jobs]


@router.post(
    "/{alert_id}/redeliver",
    response_model=List[DeliveryResponse],
    summary="Deliver an alert again",
    description="""
    Reset the alert's delivery intents to `pending` with a fresh attempt
    budget. Without `channels` every channel of the alert is queued.
    """
)
async def redeliver_alert(
    alert_id: str,
    body: Optional[AlertRedeliverDTO] = Body(None),
    tenant_id: str = Depends(get_tenant_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    channels = body.channels if body else None
    jobs = await service.redeliver(tenant_id, alert_id, channels)
    return [DeliveryResponse.from_entity(job) for job in jobs]
