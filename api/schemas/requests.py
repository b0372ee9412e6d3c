"""Request schemas for API endpoints."""
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from scheduler.cron import DOWNLOAD_TIME_PATTERN, ScheduleType


class HistoricalDownloadRequest(BaseModel):
    """Request schema for a historical backfill."""
    scheme_ids: List[int] = Field(..., min_length=1, description="Scheme IDs to backfill")
    start_date: date = Field(..., description="First day of the range (inclusive)")
    end_date: date = Field(..., description="Last day of the range (inclusive)")

    @field_validator('scheme_ids')
    @classmethod
    def validate_unique_schemes(cls, v: List[int]) -> List[int]:
        """Validate that scheme IDs are unique within the request."""
        if len(v) != len(set(v)):
            raise ValueError('Duplicate scheme IDs in request')
        return v


class SchedulerConfigRequest(BaseModel):
    """Request schema for creating or updating a scheduler config."""
    schedule_type: Optional[str] = Field(default=None, description="daily, weekly or custom")
    download_time: Optional[str] = Field(default=None, description="Preferred time of day (HH:MM)")
    cron_expression: Optional[str] = Field(default=None, description="Standard 5-field cron expression")
    is_enabled: Optional[bool] = Field(default=None, description="Whether the schedule fires")
    webhook_url: Optional[str] = Field(default=None, description="Workflow webhook override")

    @field_validator('schedule_type')
    @classmethod
    def validate_schedule_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ScheduleType.ALL:
            raise ValueError(f"schedule_type must be one of {', '.join(ScheduleType.ALL)}")
        return v

    @field_validator('download_time')
    @classmethod
    def validate_download_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not DOWNLOAD_TIME_PATTERN.match(v):
            raise ValueError('download_time must be HH:MM')
        return v

    @field_validator('webhook_url')
    @classmethod
    def validate_webhook_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(('http://', 'https://')):
            raise ValueError('URL must start with http:// or https://')
        return v


class DownloadCallbackRequest(BaseModel):
    """Payload posted by the workflow engine when it finishes."""
    job_id: str
    execution_id: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
