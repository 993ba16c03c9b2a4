"""
Shared API Dependencies
=======================

FastAPI dependencies shared by the module routers.
"""

from typing import Any, List, Optional

from fastapi import Header, HTTPException, Request, status

from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

MAX_TENANT_ID_LENGTH = 64


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")) -> str:
    """
    Tenant of the request, as set by the upstream gateway.

    Authentication happens upstream; this only insists the header is present.
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required"
        )
    if len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Tenant-ID must be {MAX_TENANT_ID_LENGTH} characters or less"
        )
    return tenant_id


async def get_actor(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> Optional[str]:
    """User acting on the request, if the gateway forwarded one."""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def app_service(request: Request, name: str) -> Any:
    """Get a service from app state or answer 503."""
    service = getattr(request.app.state, name, None)
    if service is None:
        logger.warning("Service not available", extra={"service": name})
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not available"
        )
    return service


def split_csv(value: Optional[str]) -> List[str]:
    """Comma-separated query parameter to a list of non-empty values."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
