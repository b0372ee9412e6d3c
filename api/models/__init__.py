# Models module
from .job import DownloadJobModel, JobStatusEnum, JobTypeEnum
from .scheduler import SchedulerConfigModel, ScheduleExecutionModel

__all__ = ["DownloadJobModel", "JobStatusEnum", "JobTypeEnum", "SchedulerConfigModel", "ScheduleExecutionModel"]
