"""Scheduler routes for the REST API."""
from fastapi import APIRouter, HTTPException, Depends, status

from scheduler.service import SchedulerService
from api.dependencies import RequestContext, get_request_context, get_scheduler_service
from api.models.scheduler import SchedulerConfigModel
from api.schemas.requests import SchedulerConfigRequest
from api.schemas.responses import ManualTriggerResponse, SchedulerStatusResponse


router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get("/config", response_model=SchedulerConfigModel)
async def get_scheduler_config(
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Get the user's scheduler configuration."""
    config = await service.get_config(ctx.tenant_id, ctx.is_live, ctx.user_id)

    if not config:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Scheduler configuration not found"
        )

    return config


@router.post("/config", response_model=SchedulerConfigModel, status_code=status.HTTP_201_CREATED)
async def create_scheduler_config(
    request: SchedulerConfigRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Create the user's scheduler configuration and start its timer."""
    return await service.save_config(
        ctx.tenant_id, ctx.is_live, ctx.user_id,
        create=True,
        **request.model_dump()
    )


@router.put("/config", response_model=SchedulerConfigModel)
async def update_scheduler_config(
    request: SchedulerConfigRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Update the user's scheduler configuration; unset fields keep their values."""
    return await service.save_config(
        ctx.tenant_id, ctx.is_live, ctx.user_id,
        **request.model_dump()
    )


@router.delete("/config", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scheduler_config(
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Stop the timer and delete the configuration."""
    await service.delete_config(ctx.tenant_id, ctx.is_live, ctx.user_id)


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Config, timer state and the most recent executions."""
    return await service.get_status(ctx.tenant_id, ctx.is_live, ctx.user_id)


@router.post("/trigger", response_model=ManualTriggerResponse)
async def trigger_scheduler(
    ctx: RequestContext = Depends(get_request_context),
    service: SchedulerService = Depends(get_scheduler_service)
):
    """Fire the user's workflow now."""
    result = await service.manual_trigger(ctx.tenant_id, ctx.is_live, ctx.user_id)
    return ManualTriggerResponse(success=result.success, execution_id=result.execution_id, error=result.error)


@router.get("/active")
async def get_active_schedulers(service: SchedulerService = Depends(get_scheduler_service)):
    """Every live timer in this process."""
    return service.get_all_active_schedulers()
