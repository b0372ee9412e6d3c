"""Pytest configuration and fixtures."""
from datetime import date
from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from database.repositories.job_repo import ALLOWED_TRANSITIONS, JobStatus
from fetcher.amfi_client import FetchResult
from fetcher.parser import NavRecord
from orchestrator.download_service import DownloadOrchestrator
from shared.errors import NotFoundError
from shared.utils import generate_job_id, get_utc_now, to_datetime


class InMemoryJobRepository:
    """JobRepository stand-in that keeps documents in a dict and enforces status transitions."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.creation_order: List[str] = []

    async def create_job(
        self,
        tenant_id,
        is_live,
        created_by,
        job_type,
        scheme_ids,
        start_date=None,
        end_date=None,
        parent_job_id=None,
        chunk_number=None,
        total_chunks=None,
        job_id=None
    ):
        now = get_utc_now()
        job = {
            "_id": job_id or generate_job_id(),
            "tenant_id": tenant_id,
            "is_live": is_live,
            "created_by": created_by,
            "job_type": job_type,
            "scheme_ids": list(scheme_ids),
            "status": JobStatus.PENDING,
            "scheduled_date": now,
            "start_date": to_datetime(start_date),
            "end_date": to_datetime(end_date),
            "parent_job_id": parent_job_id,
            "chunk_number": chunk_number,
            "total_chunks": total_chunks,
            "result_summary": None,
            "error_details": None,
            "created_at": now,
            "updated_at": now,
            "completed_at": None
        }
        self.jobs[job["_id"]] = job
        self.creation_order.append(job["_id"])
        return dict(job)

    async def get_job(self, job_id):
        job = self.jobs.get(job_id)
        return dict(job) if job else None

    async def update_job(self, job_id, status=None, result_summary=None, error_details=None):
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Download job {job_id} not found")
        if status is not None:
            if job["status"] not in ALLOWED_TRANSITIONS[status]:
                return None
            job["status"] = status
        if result_summary is not None:
            job["result_summary"] = result_summary
        if error_details is not None:
            job["error_details"] = error_details
        job["updated_at"] = get_utc_now()
        return dict(job)

    async def list_jobs(self, tenant_id, is_live, status=None, job_type=None, parent_job_id=None, limit=50, skip=0):
        jobs = [
            dict(job) for job in self.jobs.values()
            if job["tenant_id"] == tenant_id and job["is_live"] == is_live
            and (status is None or job["status"] == status)
            and (job_type is None or job["job_type"] == job_type)
            and (parent_job_id is None or job["parent_job_id"] == parent_job_id)
        ]
        return jobs[skip:skip + limit]

    async def list_children(self, parent_job_id):
        children = [dict(job) for job in self.jobs.values() if job["parent_job_id"] == parent_job_id]
        return sorted(children, key=lambda job: job["chunk_number"])


def make_record(scheme_code: str, nav_value: Optional[float] = 10.5, nav_date: Optional[date] = date(2024, 1, 2)):
    """Build a NAV record with sensible defaults."""
    return NavRecord(
        scheme_code=scheme_code,
        scheme_name=f"Fund {scheme_code}",
        nav_value=nav_value,
        nav_date=nav_date
    )


def make_fetch_result(records=None, success=True, error=None, error_kind=None, source="daily"):
    return FetchResult(
        success=success,
        source=source,
        request_id="test_request",
        records=records if records is not None else [],
        error=error,
        error_kind=error_kind
    )


@pytest.fixture
def job_repo():
    """Create in-memory job repository."""
    return InMemoryJobRepository()


@pytest.fixture
def nav_repo():
    """Create mock NAV repository for two schemes."""
    repo = MagicMock()
    repo.exists_for_date = AsyncMock(return_value={})
    repo.get_scheme_codes = AsyncMock(return_value={1: "100001", 2: "100002"})
    repo.get_active_scheme_ids = AsyncMock(return_value=[5, 6])
    repo.upsert_nav_records = AsyncMock(return_value={"inserted": 2, "updated": 0, "errors": []})
    return repo


@pytest.fixture
def bookmark_repo():
    """Create mock bookmark repository."""
    repo = MagicMock()
    repo.get_daily_scheme_ids = AsyncMock(return_value=[1, 2])
    repo.get_tracked_scheme_ids = AsyncMock(return_value=[1, 2])
    repo.get_historical_completed = AsyncMock(return_value=[])
    repo.mark_historical_completed = AsyncMock(return_value=2)
    return repo


@pytest.fixture
def fetcher():
    """Create mock AMFI client returning two good records."""
    client = MagicMock()
    records = [make_record("100001"), make_record("100002"), make_record("999999")]
    client.fetch_daily = AsyncMock(return_value=make_fetch_result(records))
    client.fetch_historical = AsyncMock(return_value=make_fetch_result(records, source="historical"))
    client.get_cache_stats = MagicMock(return_value={"active_requests": 0, "cached_results": 0, "cache_keys": []})
    client.clear_cache = MagicMock()
    return client


@pytest.fixture
def orchestrator(job_repo, nav_repo, bookmark_repo, fetcher):
    """Create orchestrator wired to the fakes."""
    return DownloadOrchestrator(
        job_repo=job_repo,
        nav_repo=nav_repo,
        bookmark_repo=bookmark_repo,
        fetcher=fetcher,
        max_chunk_days=90,
        progress_retention=300
    )


@pytest.fixture
def sample_scheduler_config():
    """Create sample scheduler config document."""
    now = get_utc_now()
    return {
        "_id": "sched_test123",
        "tenant_id": 1,
        "user_id": 7,
        "is_live": True,
        "schedule_type": "daily",
        "cron_expression": "0 22 * * *",
        "download_time": "22:00",
        "is_enabled": True,
        "webhook_url": "http://workflow.local/webhook/nav-download-trigger",
        "last_executed_at": None,
        "next_execution_at": None,
        "execution_count": 0,
        "failure_count": 0,
        "created_at": now,
        "updated_at": now
    }
