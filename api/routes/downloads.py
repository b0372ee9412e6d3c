"""Download routes for the REST API."""
from dataclasses import asdict
from typing import List, Optional
from fastapi import APIRouter, HTTPException, Depends, status
from motor.motor_asyncio import AsyncIOMotorDatabase

from database.connection import get_db
from database.repositories.job_repo import JobRepository
from orchestrator.download_service import DownloadOrchestrator
from orchestrator.models import TriggerResult
from api.dependencies import RequestContext, get_orchestrator, get_request_context
from api.models.job import DownloadJobModel, JobStatusEnum, JobTypeEnum
from api.schemas.requests import DownloadCallbackRequest, HistoricalDownloadRequest
from api.schemas.responses import (
    ChunkResponse,
    TriggerResponse,
    ProgressResponse,
    SequentialProgressResponse,
    JobCancelResponse,
    LockResponse
)


router = APIRouter(prefix="/downloads", tags=["downloads"])


def _trigger_response(result: TriggerResult) -> TriggerResponse:
    return TriggerResponse(
        job_id=result.job_id,
        message=result.message,
        already_in_progress=result.already_in_progress,
        already_exists=result.already_exists,
        total_schemes=result.total_schemes,
        total_chunks=result.total_chunks,
        chunks=[ChunkResponse(**chunk.to_dict()) for chunk in result.chunks],
        estimated_time_ms=result.estimated_time_ms
    )


@router.post("/daily", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_daily_download(
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """
    Start today's download for the user's daily-enabled bookmarks.

    - Skips schemes that already have today's NAV
    - Returns the running job instead of starting a duplicate
    """
    result = await orchestrator.trigger_daily(ctx.tenant_id, ctx.is_live, ctx.user_id)
    return _trigger_response(result)


@router.post("/weekly", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_weekly_download(
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """Start the weekly refresh of schemes no user bookmarks."""
    result = await orchestrator.trigger_weekly(ctx.tenant_id, ctx.is_live, ctx.user_id)
    return _trigger_response(result)


@router.post("/historical", response_model=TriggerResponse, status_code=status.HTTP_202_ACCEPTED)
async def trigger_historical_download(
    request: HistoricalDownloadRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """
    Start a historical backfill.

    Ranges longer than 90 days are split into sequential chunks; the
    returned job is the parent and the response lists the chunk plan.
    """
    result = await orchestrator.trigger_historical(
        ctx.tenant_id, ctx.is_live, ctx.user_id,
        request.scheme_ids, request.start_date, request.end_date
    )
    return _trigger_response(result)


@router.get("/active", response_model=List[ProgressResponse])
async def get_active_downloads(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
    """Progress of every pending or running download."""
    return [asdict(snapshot) for snapshot in orchestrator.get_active_downloads()]


@router.get("/locks", response_model=List[LockResponse])
async def get_download_locks(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
    return [asdict(lock) for lock in orchestrator.get_download_locks()]


@router.delete("/locks")
async def clear_download_locks(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
    """Drop every download lock."""
    cleared = orchestrator.clear_all_locks()
    return {"cleared": cleared}


@router.get("/cache")
async def get_fetch_cache_stats(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
    return orchestrator.fetcher.get_cache_stats()


@router.delete("/cache")
async def clear_fetch_cache(orchestrator: DownloadOrchestrator = Depends(get_orchestrator)):
    orchestrator.fetcher.clear_cache()
    return {"cleared": True}


@router.post("/callback")
async def download_callback(
    request: DownloadCallbackRequest,
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """Deprecated workflow callback. Acknowledged only; poll progress instead."""
    await orchestrator.handle_callback(request.model_dump())
    return {"acknowledged": True}


@router.get("/jobs", response_model=List[DownloadJobModel])
async def list_download_jobs(
    status_filter: Optional[JobStatusEnum] = None,
    job_type: Optional[JobTypeEnum] = None,
    parent_job_id: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """List the tenant's download jobs with optional filters."""
    job_repo = JobRepository(db)

    return await job_repo.list_jobs(
        ctx.tenant_id,
        ctx.is_live,
        status=status_filter.value if status_filter else None,
        job_type=job_type.value if job_type else None,
        parent_job_id=parent_job_id,
        limit=min(limit, 200),
        skip=skip
    )


@router.get("/jobs/{job_id}", response_model=DownloadJobModel)
async def get_download_job(
    job_id: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncIOMotorDatabase = Depends(get_db)
):
    """Get a stored download job."""
    job_repo = JobRepository(db)

    job = await job_repo.get_job(job_id)

    if not job or job["tenant_id"] != ctx.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found"
        )

    return job


@router.get("/{job_id}/progress", response_model=ProgressResponse)
async def get_download_progress(
    job_id: str,
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """Live progress of a job. Progress is kept for a few minutes after it finishes."""
    snapshot = orchestrator.get_download_progress(job_id)

    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No progress found for job {job_id}"
        )

    return asdict(snapshot)


@router.get("/{job_id}/sequential-progress", response_model=SequentialProgressResponse)
async def get_sequential_progress(
    job_id: str,
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """Chunk-level progress of a split historical download."""
    progress = orchestrator.get_sequential_progress(job_id)

    if progress is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sequential progress found for job {job_id}"
        )

    return asdict(progress)


@router.delete("/{job_id}", response_model=JobCancelResponse)
async def cancel_download(
    job_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: DownloadOrchestrator = Depends(get_orchestrator)
):
    """Cancel a pending or running download."""
    job = await orchestrator.cancel_download(job_id, ctx.user_id, tenant_id=ctx.tenant_id)

    return JobCancelResponse(
        job_id=job_id,
        status=job["status"],
        message="Download cancelled. Work already in flight is discarded."
    )
