"""Download job model definitions."""
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class JobStatusEnum(str, Enum):
    """Job status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobTypeEnum(str, Enum):
    """Job type enumeration."""
    DAILY = "daily"
    HISTORICAL = "historical"
    WEEKLY = "weekly"


class DownloadJobModel(BaseModel):
    """Download job as stored in the download_jobs collection."""
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(validation_alias="_id")
    tenant_id: int
    is_live: bool
    created_by: int
    job_type: JobTypeEnum
    status: JobStatusEnum
    scheme_ids: List[int]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    parent_job_id: Optional[str] = None
    chunk_number: Optional[int] = None
    total_chunks: Optional[int] = None
    result_summary: Optional[Dict[str, Any]] = None
    error_details: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
