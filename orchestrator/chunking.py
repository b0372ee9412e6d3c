"""Date range validation and splitting into source-sized windows."""
import math
from datetime import date, timedelta
from typing import List, Optional

from orchestrator.models import DownloadChunk
from shared.errors import ErrorCodes, ValidationError

# per scheme, per 30-day slice of the range
ESTIMATED_MS_PER_SCHEME_MONTH = 2000


def validate_date_range(start_date: date, end_date: date, today: Optional[date] = None) -> int:
    """Reject inverted or future ranges and return the inclusive day count."""
    today = today or date.today()
    if start_date > end_date:
        raise ValidationError(
            f"Start date {start_date} is after end date {end_date}",
            code=ErrorCodes.INVALID_DATE_RANGE
        )
    if end_date > today:
        raise ValidationError(
            f"End date {end_date} is in the future",
            code=ErrorCodes.INVALID_DATE_RANGE
        )
    return (end_date - start_date).days + 1


def split_date_range(start_date: date, end_date: date, max_days: int = 90) -> List[DownloadChunk]:
    """
    Split [start_date, end_date] into consecutive windows of at most `max_days` days.

    Windows are inclusive, contiguous and non-overlapping; the last one is
    truncated at `end_date`. A range of D days yields ceil(D / max_days) chunks.
    """
    if start_date > end_date:
        raise ValidationError(
            f"Start date {start_date} is after end date {end_date}",
            code=ErrorCodes.INVALID_DATE_RANGE
        )
    if max_days < 1:
        raise ValueError("max_days must be positive")

    chunks = []
    current = start_date
    number = 1
    while current <= end_date:
        chunk_end = min(current + timedelta(days=max_days - 1), end_date)
        chunks.append(DownloadChunk(chunk_number=number, start_date=current, end_date=chunk_end))
        current = chunk_end + timedelta(days=1)
        number += 1
    return chunks


def estimate_download_time(scheme_count: int, day_count: int) -> int:
    """Rough duration estimate in milliseconds."""
    return scheme_count * ESTIMATED_MS_PER_SCHEME_MONTH * math.ceil(day_count / 30)
