"""Request-scoped dependencies shared by the routers."""
from dataclasses import dataclass
from fastapi import Header, HTTPException, Request, status

from orchestrator.download_service import DownloadOrchestrator
from scheduler.service import SchedulerService


@dataclass
class RequestContext:
    """Tenant, user and environment the request acts for."""
    tenant_id: int
    user_id: int
    is_live: bool


async def get_request_context(
    x_tenant_id: int = Header(..., description="Tenant identifier"),
    x_user_id: int = Header(..., description="Acting user identifier"),
    x_environment: str = Header(default="live", description="live or test")
) -> RequestContext:
    """Read tenant/user/environment headers set by the auth gateway."""
    environment = x_environment.lower()
    if environment not in ("live", "test"):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="X-Environment must be 'live' or 'test'"
        )
    return RequestContext(tenant_id=x_tenant_id, user_id=x_user_id, is_live=environment == "live")


def get_orchestrator(request: Request) -> DownloadOrchestrator:
    return request.app.state.orchestrator


def get_scheduler_service(request: Request) -> SchedulerService:
    return request.app.state.scheduler_service
