"""Error taxonomy shared by the fetcher, orchestrator and scheduler."""
from typing import Optional


class NavEngineError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(NavEngineError):
    """Bad input: inverted or oversized date range, future end date, bad cron."""


class ConflictError(NavEngineError):
    """Lock already held, backfill already completed, config already exists."""


class NotFoundError(NavEngineError):
    """Unknown job or scheduler configuration."""


class ExternalFetchError(NavEngineError):
    """Network failure, timeout, empty or malformed upstream response."""

    def __init__(self, message: str, kind: str = "network"):
        super().__init__(message, code=kind)
        self.kind = kind


class DataQualityError(NavEngineError):
    """Too many incomplete rows in a parsed batch."""


class PersistenceError(NavEngineError):
    """A store operation failed."""


class ErrorCodes:
    """Stable error codes surfaced to API clients."""
    HISTORICAL_DOWNLOAD_COMPLETED = "HISTORICAL_DOWNLOAD_COMPLETED"
    DOWNLOAD_JOB_NOT_FOUND = "DOWNLOAD_JOB_NOT_FOUND"
    SCHEDULER_CONFIG_NOT_FOUND = "SCHEDULER_CONFIG_NOT_FOUND"
    SCHEDULER_CONFIG_EXISTS = "SCHEDULER_CONFIG_EXISTS"
    INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
    INVALID_CRON_EXPRESSION = "INVALID_CRON_EXPRESSION"
    NO_SCHEMES_CONFIGURED = "NO_SCHEMES_CONFIGURED"
