# Schemas module
from .requests import DownloadCallbackRequest, HistoricalDownloadRequest, SchedulerConfigRequest
from .responses import (
    ChunkResponse,
    TriggerResponse,
    ProgressResponse,
    SequentialProgressResponse,
    JobCancelResponse,
    LockResponse,
    SchedulerStatusResponse,
    ManualTriggerResponse,
    ErrorResponse
)

__all__ = [
    "DownloadCallbackRequest",
    "HistoricalDownloadRequest",
    "SchedulerConfigRequest",
    "ChunkResponse",
    "TriggerResponse",
    "ProgressResponse",
    "SequentialProgressResponse",
    "JobCancelResponse",
    "LockResponse",
    "SchedulerStatusResponse",
    "ManualTriggerResponse",
    "ErrorResponse"
]
