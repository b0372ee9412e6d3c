"""AMFI NAV data client with request deduplication, rate limiting and retries."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

from fetcher.parser import (
    NavRecord,
    parse_daily_nav_data,
    parse_historical_nav_data,
    select_valid_records,
)
from shared.config import settings
from shared.errors import DataQualityError, ExternalFetchError
from shared.utils import calculate_exponential_backoff, format_amfi_date

logger = logging.getLogger(__name__)


class FetchErrorKind:
    """Failure kinds carried by an unsuccessful FetchResult."""
    VALIDATION = "validation"
    NETWORK = "network"
    TIMEOUT = "timeout"
    PARSE = "parse"
    DATA_QUALITY = "data_quality"


@dataclass
class FetchOptions:
    """Per-call overrides; unset fields fall back to the client defaults."""
    request_id: Optional[str] = None
    retry_attempts: Optional[int] = None
    retry_delay: Optional[float] = None
    rate_limit_delay: Optional[float] = None
    timeout: Optional[float] = None
    validate_data: bool = True


@dataclass
class FetchResult:
    """Outcome of a fetch. Callers must check `success`."""
    success: bool
    source: str
    request_id: str
    records: List[NavRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    processing_time_ms: int = 0

    @property
    def total_records(self) -> int:
        return len(self.records)


class AmfiClient:
    """Client for the AMFI daily snapshot and historical report endpoints."""

    def __init__(
        self,
        timeout: float = None,
        retry_attempts: int = None,
        retry_delay: float = None,
        rate_limit_delay: float = None,
        sleep: Callable[[float], Awaitable[None]] = None,
    ):
        self.timeout = timeout or settings.fetch_timeout
        self.retry_attempts = retry_attempts or settings.fetch_retry_attempts
        self.retry_delay = settings.fetch_retry_delay if retry_delay is None else retry_delay
        self.rate_limit_delay = settings.fetch_rate_limit_delay if rate_limit_delay is None else rate_limit_delay
        self.daily_url = settings.amfi_daily_url
        self.historical_url = settings.amfi_historical_url
        self.headers = {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "text/plain, text/html, */*",
            "Accept-Language": "en-US,en;q=0.9",
            "Cache-Control": "no-cache",
            "Referer": "http://portal.amfiindia.com/",
        }
        self._sleep = sleep or asyncio.sleep
        # request key -> shared task; kept after completion until the TTL expires
        self._requests: Dict[str, asyncio.Task] = {}
        self._rate_lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None

    # ==================== Public operations ====================

    async def fetch_daily(self, options: FetchOptions = None) -> FetchResult:
        """Download the full daily NAV snapshot for every scheme."""
        options = options or FetchOptions()
        request_id = options.request_id or f"daily_{date.today().isoformat()}"
        return await self._deduplicate(
            request_id,
            settings.daily_cache_ttl,
            lambda: self._execute("daily", request_id, self.daily_url, parse_daily_nav_data, options),
        )

    async def fetch_historical(self, start_date: date, end_date: date, options: FetchOptions = None) -> FetchResult:
        """Download historical NAVs for a window of at most `max_span_days`."""
        options = options or FetchOptions()
        request_id = options.request_id or f"historical_{start_date.isoformat()}_{end_date.isoformat()}"

        if start_date > end_date:
            return self._failure(
                "historical", request_id, FetchErrorKind.VALIDATION,
                "Start date cannot be after end date", time.monotonic()
            )
        if (end_date - start_date).days > settings.max_span_days:
            return self._failure(
                "historical", request_id, FetchErrorKind.VALIDATION,
                f"Historical download limited to {settings.max_span_days} days per request",
                time.monotonic()
            )

        url = (
            f"{self.historical_url}?mf={settings.amfi_fund_group}"
            f"&frmdt={format_amfi_date(start_date)}&todt={format_amfi_date(end_date)}"
            f"&tp={settings.amfi_report_type}"
        )
        return await self._deduplicate(
            request_id,
            settings.historical_cache_ttl,
            lambda: self._execute("historical", request_id, url, parse_historical_nav_data, options),
        )

    async def fetch_for_scheme(self, scheme_code: str, options: FetchOptions = None) -> FetchResult:
        """Download today's NAV for a single scheme (filtered from the daily snapshot)."""
        options = options or FetchOptions()
        request_id = options.request_id or f"scheme_{scheme_code}_{date.today().isoformat()}"
        return await self._deduplicate(
            request_id,
            settings.daily_cache_ttl,
            lambda: self._execute(
                "daily", request_id, self.daily_url, parse_daily_nav_data, options, scheme_code=scheme_code
            ),
        )

    def clear_cache(self):
        """Drop every in-flight and cached request entry."""
        self._requests.clear()
        logger.info("AMFI request cache cleared")

    def get_cache_stats(self) -> Dict[str, object]:
        """Cache statistics for monitoring."""
        return {
            "active_requests": sum(1 for task in self._requests.values() if not task.done()),
            "cached_results": sum(1 for task in self._requests.values() if task.done()),
            "cache_keys": list(self._requests.keys()),
        }

    # ==================== Deduplication ====================

    async def _deduplicate(
        self,
        request_id: str,
        ttl: float,
        factory: Callable[[], Awaitable[FetchResult]],
    ) -> FetchResult:
        """Share one execution between every caller using the same request key."""
        existing = self._requests.get(request_id)
        if existing is not None:
            logger.info(f"AMFI request {request_id} already in flight or cached, sharing result")
            return await asyncio.shield(existing)

        task = asyncio.create_task(factory())
        self._requests[request_id] = task
        task.add_done_callback(lambda done: self._schedule_eviction(request_id, done, ttl))
        return await asyncio.shield(task)

    def _schedule_eviction(self, request_id: str, task: asyncio.Task, ttl: float):
        failed = task.cancelled() or task.exception() is not None or not task.result().success
        if failed:
            self._evict(request_id, task)
            return
        asyncio.get_running_loop().call_later(ttl, self._evict, request_id, task)

    def _evict(self, request_id: str, task: asyncio.Task):
        if self._requests.get(request_id) is task:
            del self._requests[request_id]

    # ==================== Execution ====================

    async def _execute(
        self,
        source: str,
        request_id: str,
        url: str,
        parser: Callable[[str], List[NavRecord]],
        options: FetchOptions,
        scheme_code: Optional[str] = None,
    ) -> FetchResult:
        started = time.monotonic()
        logger.info(f"Starting {source} NAV download {request_id}")

        try:
            body = await self._request_with_retry(url, options)
        except ExternalFetchError as e:
            return self._failure(source, request_id, e.kind, e.message, started)

        try:
            records = parser(body)
        except Exception as e:
            return self._failure(source, request_id, FetchErrorKind.PARSE, f"Failed to parse {source} NAV data: {e}", started)

        if options.validate_data:
            try:
                records = select_valid_records(records)
            except DataQualityError as e:
                return self._failure(source, request_id, FetchErrorKind.DATA_QUALITY, e.message, started)
        else:
            records = [record for record in records if record.is_complete]

        if scheme_code is not None:
            records = [record for record in records if record.scheme_code == scheme_code]

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{source.capitalize()} NAV download {request_id} completed: {len(records)} records in {elapsed_ms}ms")

        return FetchResult(
            success=True,
            source=source,
            request_id=request_id,
            records=records,
            processing_time_ms=elapsed_ms,
        )

    def _failure(self, source: str, request_id: str, kind: str, message: str, started: float) -> FetchResult:
        logger.error(f"{source.capitalize()} NAV download {request_id} failed ({kind}): {message}")
        return FetchResult(
            success=False,
            source=source,
            request_id=request_id,
            error=message,
            error_kind=kind,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )

    async def _request_with_retry(self, url: str, options: FetchOptions) -> str:
        """GET `url` with rate limiting and exponential backoff between attempts."""
        attempts = options.retry_attempts or self.retry_attempts
        base_delay = self.retry_delay if options.retry_delay is None else options.retry_delay
        spacing = self.rate_limit_delay if options.rate_limit_delay is None else options.rate_limit_delay
        timeout = options.timeout or self.timeout

        last_error: Optional[ExternalFetchError] = None
        for attempt in range(1, attempts + 1):
            await self._respect_rate_limit(spacing)
            try:
                body = await self._request(url, timeout)
                logger.debug(f"AMFI request succeeded on attempt {attempt}: {url} ({len(body)} bytes)")
                return body
            except asyncio.TimeoutError:
                last_error = ExternalFetchError(f"Request timeout after {timeout}s", kind=FetchErrorKind.TIMEOUT)
            except aiohttp.ClientError as e:
                last_error = ExternalFetchError(f"Network error: {e}", kind=FetchErrorKind.NETWORK)
            except ExternalFetchError as e:
                last_error = e

            logger.warning(f"AMFI request attempt {attempt}/{attempts} failed for {url}: {last_error.message}")

            if attempt < attempts:
                delay = calculate_exponential_backoff(attempt, base_delay)
                logger.info(f"Retrying AMFI request in {delay}s")
                await self._sleep(delay)

        raise last_error

    async def _respect_rate_limit(self, spacing: float):
        """Enforce the global minimum spacing between outbound calls."""
        async with self._rate_lock:
            if self._last_request_at is not None:
                elapsed = time.monotonic() - self._last_request_at
                if elapsed < spacing:
                    await self._sleep(spacing - elapsed)
            self._last_request_at = time.monotonic()

    async def _request(self, url: str, timeout: float) -> str:
        """Single outbound GET; raises on HTTP errors and empty bodies."""
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout),
            headers=self.headers
        ) as session:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise ExternalFetchError(
                        f"HTTP {response.status}: {response.reason}",
                        kind=FetchErrorKind.NETWORK
                    )
                body = await response.text()

        if not body or not body.strip():
            raise ExternalFetchError("Empty response from AMFI", kind=FetchErrorKind.NETWORK)
        return body
