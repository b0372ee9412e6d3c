"""Job repository for CRUD operations on the download_jobs collection."""
import logging
from datetime import date
from typing import Optional, List, Dict, Any
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError
from shared.errors import ErrorCodes, NotFoundError, PersistenceError
from shared.utils import generate_job_id, get_utc_now, to_datetime

logger = logging.getLogger(__name__)


class JobStatus:
    """Job status constants."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, FAILED, CANCELLED)
    ACTIVE = (PENDING, RUNNING)


class JobType:
    """Job type constants."""
    DAILY = "daily"
    HISTORICAL = "historical"
    WEEKLY = "weekly"


# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    JobStatus.RUNNING: [JobStatus.PENDING],
    JobStatus.COMPLETED: [JobStatus.PENDING, JobStatus.RUNNING],
    JobStatus.FAILED: [JobStatus.PENDING, JobStatus.RUNNING],
    JobStatus.CANCELLED: [JobStatus.PENDING, JobStatus.RUNNING],
}


class JobRepository:
    """Repository for download job records."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.download_jobs

    async def create_job(
        self,
        tenant_id: int,
        is_live: bool,
        created_by: int,
        job_type: str,
        scheme_ids: List[int],
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        parent_job_id: Optional[str] = None,
        chunk_number: Optional[int] = None,
        total_chunks: Optional[int] = None,
        job_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a new pending job record."""
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

        try:
            await self.collection.insert_one(job)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to create {job_type} download job: {e}") from e
        return job

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get a job by ID."""
        return await self.collection.find_one({"_id": job_id})

    async def update_job(
        self,
        job_id: str,
        status: Optional[str] = None,
        result_summary: Optional[Dict[str, Any]] = None,
        error_details: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Update a job and return the stored document.

        Status changes are only applied from an allowed predecessor state, so
        a terminal job never moves again. A refused transition returns None;
        an unknown job raises NotFoundError.
        """
        now = get_utc_now()
        query: Dict[str, Any] = {"_id": job_id}
        fields: Dict[str, Any] = {"updated_at": now}

        if status is not None:
            query["status"] = {"$in": ALLOWED_TRANSITIONS[status]}
            fields["status"] = status
            if status in JobStatus.TERMINAL:
                fields["completed_at"] = now
        if result_summary is not None:
            fields["result_summary"] = result_summary
        if error_details is not None:
            fields["error_details"] = error_details

        try:
            updated = await self.collection.find_one_and_update(
                query,
                {"$set": fields},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise PersistenceError(f"Failed to update download job {job_id}: {e}") from e

        if updated is None:
            existing = await self.get_job(job_id)
            if existing is None:
                raise NotFoundError(f"Download job {job_id} not found", code=ErrorCodes.DOWNLOAD_JOB_NOT_FOUND)
            logger.warning(f"Refused transition of job {job_id} from {existing['status']} to {status}")
        return updated

    async def list_jobs(
        self,
        tenant_id: int,
        is_live: bool,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        parent_job_id: Optional[str] = None,
        limit: int = 50,
        skip: int = 0
    ) -> List[Dict[str, Any]]:
        """List jobs for a tenant/environment with optional filters."""
        query: Dict[str, Any] = {"tenant_id": tenant_id, "is_live": is_live}
        if status:
            query["status"] = status
        if job_type:
            query["job_type"] = job_type
        if parent_job_id:
            query["parent_job_id"] = parent_job_id

        cursor = self.collection.find(query).sort("created_at", -1).skip(skip).limit(limit)
        return await cursor.to_list(length=limit)

    async def list_children(self, parent_job_id: str) -> List[Dict[str, Any]]:
        """Chunk jobs of a parent in chunk order."""
        cursor = self.collection.find({"parent_job_id": parent_job_id}).sort("chunk_number", 1)
        return await cursor.to_list(length=None)
