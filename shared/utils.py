"""Shared utility functions."""
import uuid
from datetime import date, datetime, time, timezone
from typing import Optional


MONTH_ABBREVIATIONS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                       "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def generate_job_id() -> str:
    """Generate a unique download job ID."""
    return f"job_{uuid.uuid4().hex[:12]}"


def generate_config_id() -> str:
    """Generate a unique scheduler config ID."""
    return f"sched_{uuid.uuid4().hex[:12]}"


def generate_execution_id() -> str:
    """Generate a unique schedule execution ID."""
    return f"exec_{uuid.uuid4().hex[:12]}"


def get_utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(value: Optional[date]) -> Optional[datetime]:
    """Convert a date to a midnight UTC datetime (BSON has no date type)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def to_date(value) -> Optional[date]:
    """Convert a stored datetime (or ISO string) back to a date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def format_amfi_date(value: date) -> str:
    """Format a date the way AMFI expects it (DD-MMM-YYYY)."""
    return f"{value.day:02d}-{MONTH_ABBREVIATIONS[value.month - 1]}-{value.year}"


def environment_label(is_live: bool) -> str:
    return "live" if is_live else "test"


def calculate_exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Calculate exponential backoff delay for a 1-based attempt number."""
    delay = base_delay * (2 ** (attempt - 1))
    return min(delay, max_delay)
