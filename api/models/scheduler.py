"""Scheduler model definitions."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class SchedulerConfigModel(BaseModel):
    """Scheduler config as stored in the scheduler_configs collection."""
    model_config = ConfigDict(populate_by_name=True)

    config_id: str = Field(validation_alias="_id")
    tenant_id: int
    user_id: int
    is_live: bool
    schedule_type: str
    cron_expression: str
    download_time: str
    is_enabled: bool
    webhook_url: str
    last_executed_at: Optional[datetime] = None
    next_execution_at: Optional[datetime] = None
    execution_count: int = 0
    failure_count: int = 0
    created_at: datetime
    updated_at: datetime


class ScheduleExecutionModel(BaseModel):
    """One fire of a scheduler config."""
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(validation_alias="_id")
    scheduler_config_id: str
    execution_time: datetime
    status: str
    trigger_source: str
    workflow_execution_id: Optional[str] = None
    error_message: Optional[str] = None
    execution_duration_ms: Optional[int] = None
