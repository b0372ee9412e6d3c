"""Cron expression helpers backed by APScheduler's CronTrigger."""
import re
from datetime import datetime
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from shared.config import settings
from shared.errors import ErrorCodes, ValidationError
from shared.utils import get_utc_now


class ScheduleType:
    """Schedule type constants."""
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"

    ALL = (DAILY, WEEKLY, CUSTOM)


DOWNLOAD_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def build_trigger(cron_expression: str, timezone: str = None) -> CronTrigger:
    """Parse a standard 5-field cron expression."""
    fields = (cron_expression or "").split()
    if len(fields) != 5:
        raise ValidationError(
            f"Invalid cron expression '{cron_expression}': expected 5 fields, got {len(fields)}",
            code=ErrorCodes.INVALID_CRON_EXPRESSION
        )
    try:
        return CronTrigger.from_crontab(" ".join(fields), timezone=timezone or settings.scheduler_timezone)
    except ValueError as e:
        raise ValidationError(
            f"Invalid cron expression '{cron_expression}': {e}",
            code=ErrorCodes.INVALID_CRON_EXPRESSION
        ) from e


def validate_cron(cron_expression: str) -> str:
    """Return the normalised expression or raise ValidationError."""
    build_trigger(cron_expression)
    return " ".join(cron_expression.split())


def next_fire_time(cron_expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
    trigger = build_trigger(cron_expression)
    return trigger.get_next_fire_time(None, now or get_utc_now())


def build_cron_expression(schedule_type: str, download_time: str) -> str:
    """Derive a cron expression from a schedule type and an HH:MM time."""
    match = DOWNLOAD_TIME_PATTERN.match(download_time or "")
    if not match:
        raise ValidationError(f"Invalid download time '{download_time}', expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))

    if schedule_type == ScheduleType.DAILY:
        return f"{minute} {hour} * * *"
    if schedule_type == ScheduleType.WEEKLY:
        return f"{minute} {hour} * * 1"
    raise ValidationError("Custom schedules require an explicit cron expression")
