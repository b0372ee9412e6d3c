"""
Download orchestrator.

Turns trigger requests into download jobs, runs them as supervised
background tasks and keeps lock and progress state for polling clients.
"""
import asyncio
import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional, Set

from database.repositories.bookmark_repo import BookmarkRepository
from database.repositories.job_repo import JobRepository, JobStatus, JobType
from database.repositories.nav_repo import NavRepository
from fetcher.amfi_client import AmfiClient, FetchErrorKind, FetchOptions, FetchResult
from orchestrator.chunking import estimate_download_time, split_date_range, validate_date_range
from orchestrator.locks import LockTable
from orchestrator.models import DownloadChunk, DownloadLock, ProgressSnapshot, SequentialProgress, TriggerResult
from orchestrator.progress import ProgressTracker, SequentialStatus
from shared.config import settings
from shared.errors import ConflictError, ErrorCodes, ExternalFetchError, NotFoundError, ValidationError
from shared.utils import generate_job_id, get_utc_now, to_date

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Raised at a checkpoint once the job has been cancelled."""


class DownloadFailed(Exception):
    """Raised after a job's failure has already been persisted."""


class DownloadOrchestrator:
    """Coordinates download jobs for every tenant served by this process."""

    def __init__(
        self,
        job_repo: JobRepository,
        nav_repo: NavRepository,
        bookmark_repo: BookmarkRepository,
        fetcher: AmfiClient,
        max_chunk_days: int = None,
        progress_retention: float = None,
        weekly_scheme_limit: int = None
    ):
        self.job_repo = job_repo
        self.nav_repo = nav_repo
        self.bookmark_repo = bookmark_repo
        self.fetcher = fetcher
        self.max_chunk_days = max_chunk_days or settings.max_chunk_days
        self.weekly_scheme_limit = weekly_scheme_limit or settings.weekly_scheme_limit
        retention = settings.progress_retention_seconds if progress_retention is None else progress_retention

        self.locks = LockTable()
        self.progress = ProgressTracker(retention)
        self._tasks: Set[asyncio.Task] = set()
        self._cancelled: Set[str] = set()

    # ==================== Triggers ====================

    async def trigger_daily(self, tenant_id: int, is_live: bool, user_id: int) -> TriggerResult:
        """Download today's NAVs for the user's daily-enabled bookmarks."""
        today = date.today()
        lock_key = LockTable.make_key(JobType.DAILY, tenant_id, is_live, today.isoformat())
        held = self.locks.get(lock_key)
        if held:
            return self._in_progress(held, "Daily download already in progress")

        scheme_ids = await self.bookmark_repo.get_daily_scheme_ids(
            tenant_id, is_live, user_id, settings.daily_bookmark_limit
        )
        if not scheme_ids:
            raise ValidationError(
                "No schemes configured for daily download",
                code=ErrorCodes.NO_SCHEMES_CONFIGURED
            )

        existing = await self.nav_repo.exists_for_date(tenant_id, is_live, scheme_ids, today)
        missing = [scheme_id for scheme_id in scheme_ids if not existing.get(scheme_id)]
        if not missing:
            logger.info(f"Daily NAV data already present for tenant {tenant_id} ({len(scheme_ids)} schemes)")
            return TriggerResult(
                job_id=None,
                message="NAV data for today already exists for all schemes",
                already_exists=True,
                total_schemes=len(scheme_ids)
            )

        return await self._launch_single(
            lock_key, JobType.DAILY, tenant_id, is_live, user_id, missing,
            message=f"Daily download started for {len(missing)} schemes",
            estimated_time_ms=estimate_download_time(len(missing), 1)
        )

    async def trigger_weekly(self, tenant_id: int, is_live: bool, user_id: int) -> TriggerResult:
        """Download today's NAVs for active schemes nobody bookmarks."""
        lock_key = LockTable.make_key(JobType.WEEKLY, tenant_id, is_live, "all")
        held = self.locks.get(lock_key)
        if held:
            return self._in_progress(held, "Weekly download already in progress")

        tracked = await self.bookmark_repo.get_tracked_scheme_ids(tenant_id, is_live)
        scheme_ids = await self.nav_repo.get_active_scheme_ids(
            tenant_id, is_live, exclude=tracked, limit=self.weekly_scheme_limit
        )
        if not scheme_ids:
            logger.info(f"No untracked schemes for weekly download (tenant {tenant_id})")
            return TriggerResult(job_id=None, message="No untracked schemes to download")

        return await self._launch_single(
            lock_key, JobType.WEEKLY, tenant_id, is_live, user_id, scheme_ids,
            message=f"Weekly download started for {len(scheme_ids)} untracked schemes",
            estimated_time_ms=estimate_download_time(len(scheme_ids), 1)
        )

    async def trigger_historical(
        self,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        scheme_ids: List[int],
        start_date: date,
        end_date: date
    ) -> TriggerResult:
        """
        Backfill NAVs for `scheme_ids` over [start_date, end_date].

        Ranges longer than one source window become a parent job with one
        child per window, executed in order after this call returns.
        """
        scheme_ids = sorted(set(scheme_ids))
        if not scheme_ids:
            raise ValidationError("At least one scheme is required for a historical download")

        scope = f"{user_id}:{','.join(str(scheme_id) for scheme_id in scheme_ids)}"
        lock_key = LockTable.make_key(JobType.HISTORICAL, tenant_id, is_live, scope)
        held = self.locks.get(lock_key)
        if held:
            return self._in_progress(held, "Historical download already in progress for these schemes")

        day_count = validate_date_range(start_date, end_date)

        completed = await self.bookmark_repo.get_historical_completed(tenant_id, is_live, user_id, scheme_ids)
        if completed:
            raise ConflictError(
                f"Historical download already completed for schemes: {sorted(completed)}",
                code=ErrorCodes.HISTORICAL_DOWNLOAD_COMPLETED
            )

        chunks = split_date_range(start_date, end_date, self.max_chunk_days)
        estimated = estimate_download_time(len(scheme_ids), day_count)

        if len(chunks) == 1:
            result = await self._launch_single(
                lock_key, JobType.HISTORICAL, tenant_id, is_live, user_id, scheme_ids,
                message=f"Historical download started for {len(scheme_ids)} schemes ({day_count} days)",
                estimated_time_ms=estimated,
                start_date=start_date,
                end_date=end_date
            )
            result.chunks = chunks
            return result

        return await self._launch_sequential(
            lock_key, tenant_id, is_live, user_id, scheme_ids, start_date, end_date, chunks, estimated
        )

    # ==================== Cancellation ====================

    async def cancel_download(
        self,
        job_id: str,
        user_id: Optional[int] = None,
        tenant_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Cancel a pending or running job.

        With `tenant_id` set, jobs of other tenants are reported as not found.
        The running task notices at its next checkpoint; a fetch already in
        flight completes and its result is thrown away.
        """
        job = await self.job_repo.get_job(job_id)
        if job is None or (tenant_id is not None and job["tenant_id"] != tenant_id):
            raise NotFoundError(f"Download job {job_id} not found", code=ErrorCodes.DOWNLOAD_JOB_NOT_FOUND)
        if job["status"] in JobStatus.TERMINAL:
            raise ConflictError(f"Cannot cancel job with status {job['status']}")

        self._cancelled.add(job_id)
        updated = await self.job_repo.update_job(
            job_id, status=JobStatus.CANCELLED, error_details=f"Cancelled by user {user_id}"
        )
        if updated is None:
            self._cancelled.discard(job_id)
            raise ConflictError(f"Job {job_id} finished before it could be cancelled")

        if job.get("total_chunks") and not job.get("parent_job_id"):
            for child in await self.job_repo.list_children(job_id):
                if child["status"] in JobStatus.ACTIVE:
                    self._cancelled.add(child["_id"])
                    await self.job_repo.update_job(child["_id"], status=JobStatus.CANCELLED)
                    self.progress.update(child["_id"], status=JobStatus.CANCELLED, step="Parent download cancelled")

        self.progress.update(job_id, status=JobStatus.CANCELLED, step="Download cancelled by user")
        self.progress.update_sequential(job_id, overall_status=SequentialStatus.CANCELLED)
        self.locks.release_for_job(job_id)
        logger.info(f"Download job {job_id} cancelled by user {user_id}")
        return updated

    # ==================== Read-only views ====================

    def get_download_progress(self, job_id: str) -> Optional[ProgressSnapshot]:
        return self.progress.get(job_id)

    def get_active_downloads(self) -> List[ProgressSnapshot]:
        return self.progress.active()

    def get_sequential_progress(self, parent_job_id: str) -> Optional[SequentialProgress]:
        return self.progress.get_sequential(parent_job_id)

    def get_download_locks(self) -> List[DownloadLock]:
        return self.locks.list()

    def clear_all_locks(self) -> int:
        """Drop every lock. Meant for operators recovering from a stuck key."""
        count = self.locks.clear()
        logger.warning(f"Cleared {count} download lock(s)")
        return count

    async def handle_callback(self, payload: Dict[str, Any]):
        """Acknowledge a workflow callback. Job state is owned by the orchestrator, so nothing changes."""
        logger.warning(
            f"Deprecated workflow callback for job {payload.get('job_id')} "
            f"(execution {payload.get('execution_id')}, status {payload.get('status')})"
        )

    # ==================== Lifecycle ====================

    async def wait_for_tasks(self, timeout: Optional[float] = None) -> bool:
        """Wait for background downloads to finish. Returns False on timeout."""
        while self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            if pending:
                return False
        return True

    async def shutdown(self, timeout: float = 10.0):
        """Give background downloads `timeout` seconds, then cancel the rest."""
        if not await self.wait_for_tasks(timeout):
            logger.warning(f"Cancelling {len(self._tasks)} unfinished download task(s)")
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self.progress.close()
        logger.info("Download orchestrator stopped")

    # ==================== Launch ====================

    def _in_progress(self, lock: DownloadLock, message: str) -> TriggerResult:
        logger.info(f"{message}: lock {lock.key} held by job {lock.job_id}")
        return TriggerResult(
            job_id=lock.job_id,
            message=message,
            already_in_progress=True,
            total_schemes=len(lock.scheme_ids)
        )

    def _acquire(self, lock_key: str, job_id: str, job_type: str, user_id: int, scheme_ids: List[int]):
        return self.locks.acquire(DownloadLock(
            key=lock_key,
            job_id=job_id,
            lock_type=job_type,
            locked_by=user_id,
            locked_at=get_utc_now(),
            scheme_ids=list(scheme_ids)
        ))

    async def _launch_single(
        self,
        lock_key: str,
        job_type: str,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        scheme_ids: List[int],
        message: str,
        estimated_time_ms: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> TriggerResult:
        job_id = generate_job_id()
        held = self._acquire(lock_key, job_id, job_type, user_id, scheme_ids)
        if held:
            return self._in_progress(held, f"{job_type.capitalize()} download already in progress")

        try:
            job = await self.job_repo.create_job(
                tenant_id, is_live, user_id, job_type, scheme_ids,
                start_date=start_date, end_date=end_date, job_id=job_id
            )
        except Exception:
            self.locks.release(lock_key, job_id)
            raise

        self.progress.start(job_id, job_type, len(scheme_ids), estimated_time_ms)
        self._spawn(self._supervise(job, self._execute_download(job)))
        logger.info(f"{message} (job {job_id}, tenant {tenant_id})")
        return TriggerResult(
            job_id=job_id,
            message=message,
            total_schemes=len(scheme_ids),
            estimated_time_ms=estimated_time_ms
        )

    async def _launch_sequential(
        self,
        lock_key: str,
        tenant_id: int,
        is_live: bool,
        user_id: int,
        scheme_ids: List[int],
        start_date: date,
        end_date: date,
        chunks: List[DownloadChunk],
        estimated_time_ms: int
    ) -> TriggerResult:
        parent_id = generate_job_id()
        held = self._acquire(lock_key, parent_id, JobType.HISTORICAL, user_id, scheme_ids)
        if held:
            return self._in_progress(held, "Historical download already in progress for these schemes")

        parent = None
        try:
            parent = await self.job_repo.create_job(
                tenant_id, is_live, user_id, JobType.HISTORICAL, scheme_ids,
                start_date=start_date, end_date=end_date,
                total_chunks=len(chunks), job_id=parent_id
            )
            children = []
            for chunk in chunks:
                children.append(await self.job_repo.create_job(
                    tenant_id, is_live, user_id, JobType.HISTORICAL, scheme_ids,
                    start_date=chunk.start_date,
                    end_date=chunk.end_date,
                    parent_job_id=parent_id,
                    chunk_number=chunk.chunk_number,
                    total_chunks=len(chunks)
                ))
        except Exception as e:
            self.locks.release(lock_key, parent_id)
            if parent is not None:
                await self._fail_job(parent_id, f"Failed to create chunk jobs: {e}")
            raise

        self.progress.start(
            parent_id, JobType.HISTORICAL, len(scheme_ids), estimated_time_ms, total_chunks=len(chunks)
        )
        self.progress.start_sequential(parent_id, len(chunks))
        for child in children:
            self.progress.start(child["_id"], JobType.HISTORICAL, len(scheme_ids), parent_job_id=parent_id)

        self._spawn(self._supervise(
            parent,
            self._execute_sequential(parent, children),
            child_ids=[child["_id"] for child in children]
        ))
        logger.info(
            f"Historical download {parent_id} split into {len(chunks)} chunks "
            f"for {len(scheme_ids)} schemes (tenant {tenant_id})"
        )
        return TriggerResult(
            job_id=parent_id,
            message=f"Historical download split into {len(chunks)} sequential chunks",
            total_schemes=len(scheme_ids),
            chunks=chunks,
            estimated_time_ms=estimated_time_ms
        )

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _supervise(self, job: Dict[str, Any], work, child_ids: List[str] = ()):
        """Error boundary around a background download; nothing escapes it."""
        job_id = job["_id"]
        try:
            await work
        except JobCancelled:
            logger.info(f"Download job {job_id} stopped after cancellation")
            await self._settle_children(child_ids, JobStatus.CANCELLED, "Parent download cancelled")
            self.progress.update(job_id, status=JobStatus.CANCELLED, step="Download cancelled")
            self.progress.update_sequential(job_id, overall_status=SequentialStatus.CANCELLED)
        except asyncio.CancelledError:
            logger.warning(f"Download job {job_id} interrupted by shutdown")
            await self._fail_job(job_id, "Interrupted by shutdown")
            await self._settle_children(child_ids, JobStatus.FAILED, "Interrupted by shutdown")
            self.progress.update_sequential(job_id, overall_status=SequentialStatus.FAILED)
            raise
        except DownloadFailed:
            # failure already persisted and logged by _execute_download
            pass
        except Exception as e:
            logger.exception(f"Download job {job_id} crashed: {e}")
            await self._fail_job(job_id, str(e))
            await self._settle_children(child_ids, JobStatus.FAILED, str(e))
            self.progress.update_sequential(job_id, overall_status=SequentialStatus.FAILED)
        finally:
            self.locks.release_for_job(job_id)
            self._cancelled.discard(job_id)
            self._cancelled.difference_update(child_ids)

    async def _fail_job(self, job_id: str, message: str):
        try:
            await self.job_repo.update_job(job_id, status=JobStatus.FAILED, error_details=message)
        except Exception as e:
            logger.exception(f"Could not persist failure of job {job_id}: {e}")
        self.progress.update(job_id, status=JobStatus.FAILED, step=f"Download failed: {message}", errors=[message])

    async def _settle_children(self, child_ids: List[str], status: str, message: str):
        """Move chunk jobs that never reached a terminal state to `status`."""
        for child_id in child_ids:
            try:
                updated = await self.job_repo.update_job(child_id, status=status, error_details=message)
            except Exception as e:
                logger.exception(f"Could not settle chunk job {child_id}: {e}")
                continue
            if updated is not None:
                self.progress.update(child_id, status=status, step=message)

    def _checkpoint(self, job: Dict[str, Any]):
        if job["_id"] in self._cancelled or job.get("parent_job_id") in self._cancelled:
            raise JobCancelled(job["_id"])

    # ==================== Execution ====================

    async def _execute_download(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """Run one job (standalone or a chunk) from pending to a terminal state."""
        job_id = job["_id"]
        tenant_id = job["tenant_id"]
        is_live = job["is_live"]
        started = time.monotonic()

        try:
            self._checkpoint(job)
            if await self.job_repo.update_job(job_id, status=JobStatus.RUNNING) is None:
                raise JobCancelled(job_id)
            self.progress.update(job_id, status=JobStatus.RUNNING, step="Fetching download job details...", percentage=5)

            self.progress.update(job_id, step="Fetching NAV data from AMFI...", percentage=20)
            result = await self._fetch(job)
            self._checkpoint(job)
            if not result.success:
                raise ExternalFetchError(
                    f"AMFI API Error: {result.error}",
                    kind=result.error_kind or FetchErrorKind.NETWORK
                )

            self.progress.update(
                job_id,
                step=f"Retrieved {result.total_records} records from AMFI, filtering...",
                percentage=35
            )
            codes = await self.nav_repo.get_scheme_codes(tenant_id, is_live, job["scheme_ids"])
            wanted = set(codes.values())
            records = [record for record in result.records if record.scheme_code in wanted]
            self._checkpoint(job)

            self.progress.update(job_id, step=f"Saving {len(records)} NAV records...", percentage=50)
            upsert = await self.nav_repo.upsert_nav_records(tenant_id, is_live, records, job["job_type"])
            self._checkpoint(job)

            self.progress.update(
                job_id,
                step="Building result summary...",
                percentage=90,
                processed_schemes=len(codes),
                processed_records=upsert["inserted"] + upsert["updated"],
                errors=[f"{error['scheme_code']}: {error['error']}" for error in upsert["errors"]]
            )
            summary = self._build_summary(job, codes, records, upsert, started)

            if await self.job_repo.update_job(job_id, status=JobStatus.COMPLETED, result_summary=summary) is None:
                raise JobCancelled(job_id)
            self.progress.update(
                job_id,
                status=JobStatus.COMPLETED,
                step=f"Download completed: {summary['successful_downloads']} schemes successful",
                percentage=100
            )

            if job["job_type"] == JobType.HISTORICAL and not job.get("parent_job_id"):
                await self._mark_historical(job)

            logger.info(
                f"Download job {job_id} completed: {summary['total_records_inserted']} inserted, "
                f"{summary['total_records_updated']} updated, {summary['failed_downloads']} failed"
            )
            return summary

        except JobCancelled:
            logger.info(f"Download job {job_id} cancelled; discarding its results")
            raise
        except Exception as e:
            logger.error(f"Download job {job_id} failed: {e}")
            await self._fail_job(job_id, str(e))
            raise DownloadFailed(str(e)) from e

    async def _execute_sequential(self, parent: Dict[str, Any], children: List[Dict[str, Any]]):
        """Run chunk jobs one after another; a failed chunk does not stop the rest."""
        parent_id = parent["_id"]
        total = len(children)
        started = time.monotonic()

        self._checkpoint(parent)
        if await self.job_repo.update_job(parent_id, status=JobStatus.RUNNING) is None:
            raise JobCancelled(parent_id)
        self.progress.update(parent_id, status=JobStatus.RUNNING, step=f"Starting {total} chunk downloads", percentage=1)
        self.progress.update_sequential(parent_id, overall_status=SequentialStatus.RUNNING)

        for index, child in enumerate(children, start=1):
            self._checkpoint(parent)
            chunk_start = to_date(child["start_date"])
            chunk_end = to_date(child["end_date"])
            chunk_info = {
                "chunk_number": child["chunk_number"],
                "job_id": child["_id"],
                "start_date": chunk_start.isoformat(),
                "end_date": chunk_end.isoformat()
            }
            self.progress.update_sequential(parent_id, current_chunk=chunk_info)
            self.progress.update(
                parent_id,
                step=f"Downloading chunk {index} of {total} ({chunk_start} to {chunk_end})",
                current_chunk=chunk_info
            )

            try:
                await self._execute_download(child)
            except JobCancelled:
                if parent_id in self._cancelled:
                    raise
                logger.info(f"Chunk {index}/{total} of job {parent_id} was cancelled, continuing")
                self.progress.add_chunk_error(
                    parent_id, child["chunk_number"], chunk_start, chunk_end, "Chunk cancelled by user"
                )
            except Exception as e:
                logger.error(f"Chunk {index}/{total} of job {parent_id} failed, continuing: {e}")
                self.progress.add_chunk_error(parent_id, child["chunk_number"], chunk_start, chunk_end, str(e))

            self.progress.update_sequential(parent_id, completed_chunks=index)
            self.progress.update(parent_id, percentage=min(99, round(index / total * 100)), completed_chunks=index)

        self._checkpoint(parent)
        sequential = self.progress.get_sequential(parent_id)
        chunk_errors = [
            {
                "chunk_number": error.chunk_number,
                "start_date": error.start_date.isoformat(),
                "end_date": error.end_date.isoformat(),
                "error": error.message
            }
            for error in (sequential.errors if sequential else [])
        ]
        summary = {
            "total_chunks": total,
            "successful_chunks": total - len(chunk_errors),
            "failed_chunks": len(chunk_errors),
            "completed_with_errors": bool(chunk_errors),
            "chunk_errors": chunk_errors,
            "child_job_ids": [child["_id"] for child in children],
            "execution_time_ms": int((time.monotonic() - started) * 1000)
        }

        if await self.job_repo.update_job(parent_id, status=JobStatus.COMPLETED, result_summary=summary) is None:
            raise JobCancelled(parent_id)
        self.progress.update_sequential(
            parent_id,
            overall_status=SequentialStatus.COMPLETED_WITH_ERRORS if chunk_errors else SequentialStatus.COMPLETED
        )
        self.progress.update(
            parent_id,
            status=JobStatus.COMPLETED,
            step=f"All {total} chunks processed ({len(chunk_errors)} with errors)",
            percentage=100
        )
        await self._mark_historical(parent)
        logger.info(f"Sequential download {parent_id} finished: {total - len(chunk_errors)}/{total} chunks succeeded")

    async def _fetch(self, job: Dict[str, Any]) -> FetchResult:
        if job["job_type"] == JobType.HISTORICAL:
            start_date = to_date(job.get("start_date"))
            end_date = to_date(job.get("end_date"))
            if start_date is None or end_date is None:
                raise ValidationError("Historical download requires start and end dates")
            return await self.fetcher.fetch_historical(start_date, end_date, FetchOptions())
        return await self.fetcher.fetch_daily(FetchOptions())

    def _build_summary(
        self,
        job: Dict[str, Any],
        codes: Dict[int, str],
        records: list,
        upsert: Dict[str, Any],
        started: float
    ) -> Dict[str, Any]:
        scheme_by_code = {code: scheme_id for scheme_id, code in codes.items()}
        failed_codes = {error["scheme_code"] for error in upsert["errors"]}
        received_codes = {record.scheme_code for record in records}
        total = len(job["scheme_ids"])

        return {
            "total_schemes": total,
            "successful_downloads": total - len(failed_codes),
            "failed_downloads": len(failed_codes),
            "total_records_inserted": upsert["inserted"],
            "total_records_updated": upsert["updated"],
            "schemes_with_errors": [
                {
                    "scheme_id": scheme_by_code.get(error["scheme_code"]),
                    "scheme_code": error["scheme_code"],
                    "error": error["error"]
                }
                for error in upsert["errors"]
            ],
            "schemes_without_data": sorted(
                scheme_id for scheme_id, code in codes.items() if code not in received_codes
            ),
            "execution_time_ms": int((time.monotonic() - started) * 1000),
            "api_calls_made": 1
        }

    async def _mark_historical(self, job: Dict[str, Any]):
        try:
            count = await self.bookmark_repo.mark_historical_completed(
                job["tenant_id"], job["is_live"], job["created_by"], job["scheme_ids"]
            )
            logger.info(f"Marked historical download completed on {count} bookmark(s) for job {job['_id']}")
        except Exception as e:
            logger.exception(f"Failed to mark historical download completed for job {job['_id']}: {e}")
