"""Response schemas for API endpoints."""
from typing import Any, Dict, List, Optional
from datetime import date, datetime
from pydantic import BaseModel, Field

from api.models.scheduler import ScheduleExecutionModel, SchedulerConfigModel


class ChunkResponse(BaseModel):
    """One window of a chunked download."""
    chunk_number: int
    start_date: date
    end_date: date
    day_count: int


class TriggerResponse(BaseModel):
    """Response schema for download triggers."""
    job_id: Optional[str] = Field(None, description="Job handling the request; None when nothing was started")
    message: str
    already_in_progress: bool = Field(default=False, description="An identical download already holds the lock")
    already_exists: bool = Field(default=False, description="All requested data is already stored")
    total_schemes: int = 0
    total_chunks: int = 0
    chunks: List[ChunkResponse] = Field(default_factory=list)
    estimated_time_ms: Optional[int] = None


class ProgressResponse(BaseModel):
    """Live progress of one job."""
    job_id: str
    job_type: str
    status: str
    progress_percentage: int
    current_step: str
    total_schemes: int
    processed_schemes: int
    processed_records: int
    errors: List[str]
    start_time: datetime
    last_update: datetime
    estimated_time_remaining_ms: Optional[int] = None
    parent_job_id: Optional[str] = None
    total_chunks: Optional[int] = None
    completed_chunks: Optional[int] = None
    current_chunk: Optional[Dict[str, Any]] = None


class ChunkErrorResponse(BaseModel):
    chunk_number: int
    start_date: date
    end_date: date
    message: str


class SequentialProgressResponse(BaseModel):
    """Aggregate progress of a chunked download."""
    parent_job_id: str
    total_chunks: int
    completed_chunks: int
    overall_status: str
    progress_percentage: int
    start_time: datetime
    current_chunk: Optional[Dict[str, Any]] = None
    errors: List[ChunkErrorResponse] = Field(default_factory=list)
    estimated_completion: Optional[datetime] = None


class JobCancelResponse(BaseModel):
    """Response schema for job cancellation."""
    job_id: str = Field(..., description="Unique job identifier")
    status: str = Field(..., description="Job status after cancellation")
    message: str


class LockResponse(BaseModel):
    key: str
    job_id: str
    lock_type: str
    locked_by: int
    locked_at: datetime
    scheme_ids: List[int]


class SchedulerStatusResponse(BaseModel):
    """Scheduler config, timer state and recent history."""
    config: Optional[SchedulerConfigModel] = None
    is_running: bool
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    recent_executions: List[ScheduleExecutionModel] = Field(default_factory=list)


class ManualTriggerResponse(BaseModel):
    success: bool
    execution_id: Optional[str] = None
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    """Schema for error responses."""
    error: str = Field(..., description="Error message")
    code: Optional[str] = Field(None, description="Stable error code")
