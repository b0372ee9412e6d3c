"""Live progress snapshots for running downloads."""
import asyncio
import logging
from datetime import date
from typing import Dict, List, Optional

from database.repositories.job_repo import JobStatus
from orchestrator.models import ChunkError, ProgressSnapshot, SequentialProgress
from shared.utils import get_utc_now

logger = logging.getLogger(__name__)


class SequentialStatus:
    """Overall status values of a chunked download."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, COMPLETED_WITH_ERRORS, FAILED, CANCELLED)


class ProgressTracker:
    """
    Owns per-job ProgressSnapshots and per-parent SequentialProgress.

    While a job is running its percentage only moves forward. Once a job
    reaches a terminal status its snapshot is frozen and dropped after
    `retention_seconds`.
    """

    def __init__(self, retention_seconds: float = 300.0):
        self.retention_seconds = retention_seconds
        self._snapshots: Dict[str, ProgressSnapshot] = {}
        self._sequential: Dict[str, SequentialProgress] = {}
        self._cleanup_handles: Dict[str, asyncio.TimerHandle] = {}

    # ==================== Job snapshots ====================

    def start(
        self,
        job_id: str,
        job_type: str,
        total_schemes: int,
        estimated_time_ms: Optional[int] = None,
        parent_job_id: Optional[str] = None,
        total_chunks: Optional[int] = None
    ) -> ProgressSnapshot:
        now = get_utc_now()
        snapshot = ProgressSnapshot(
            job_id=job_id,
            job_type=job_type,
            status=JobStatus.PENDING,
            progress_percentage=0,
            current_step="Initializing download...",
            total_schemes=total_schemes,
            start_time=now,
            last_update=now,
            estimated_time_remaining_ms=estimated_time_ms,
            parent_job_id=parent_job_id,
            total_chunks=total_chunks,
            completed_chunks=0 if total_chunks else None
        )
        self._snapshots[job_id] = snapshot
        return snapshot

    def update(
        self,
        job_id: str,
        status: Optional[str] = None,
        step: Optional[str] = None,
        percentage: Optional[int] = None,
        processed_schemes: Optional[int] = None,
        processed_records: Optional[int] = None,
        errors: Optional[List[str]] = None,
        completed_chunks: Optional[int] = None,
        current_chunk: Optional[dict] = None
    ) -> Optional[ProgressSnapshot]:
        """Apply a partial update. Ignored for unknown or already terminal jobs."""
        snapshot = self._snapshots.get(job_id)
        if snapshot is None or snapshot.status in JobStatus.TERMINAL:
            return None

        now = get_utc_now()
        if status is not None:
            snapshot.status = status
        if step is not None:
            snapshot.current_step = step
        if percentage is not None:
            snapshot.progress_percentage = max(snapshot.progress_percentage, min(int(percentage), 100))
        if processed_schemes is not None:
            snapshot.processed_schemes = processed_schemes
        if processed_records is not None:
            snapshot.processed_records = processed_records
        if errors:
            snapshot.errors.extend(errors)
        if completed_chunks is not None:
            snapshot.completed_chunks = completed_chunks
        if current_chunk is not None:
            snapshot.current_chunk = current_chunk
        snapshot.last_update = now

        if snapshot.status in JobStatus.TERMINAL:
            snapshot.estimated_time_remaining_ms = 0
            self._schedule_cleanup(job_id)
        elif 0 < snapshot.progress_percentage < 100:
            elapsed_ms = (now - snapshot.start_time).total_seconds() * 1000
            total_ms = elapsed_ms / snapshot.progress_percentage * 100
            snapshot.estimated_time_remaining_ms = int(total_ms - elapsed_ms)
        return snapshot

    def get(self, job_id: str) -> Optional[ProgressSnapshot]:
        return self._snapshots.get(job_id)

    def active(self) -> List[ProgressSnapshot]:
        return [s for s in self._snapshots.values() if s.status in JobStatus.ACTIVE]

    # ==================== Chunked downloads ====================

    def start_sequential(self, parent_job_id: str, total_chunks: int) -> SequentialProgress:
        progress = SequentialProgress(
            parent_job_id=parent_job_id,
            total_chunks=total_chunks,
            overall_status=SequentialStatus.PENDING,
            start_time=get_utc_now()
        )
        self._sequential[parent_job_id] = progress
        return progress

    def update_sequential(
        self,
        parent_job_id: str,
        overall_status: Optional[str] = None,
        completed_chunks: Optional[int] = None,
        current_chunk: Optional[dict] = None
    ) -> Optional[SequentialProgress]:
        progress = self._sequential.get(parent_job_id)
        if progress is None or progress.overall_status in SequentialStatus.TERMINAL:
            return None

        if overall_status is not None:
            progress.overall_status = overall_status
        if current_chunk is not None:
            progress.current_chunk = current_chunk
        if completed_chunks is not None:
            progress.completed_chunks = completed_chunks
            progress.progress_percentage = round(completed_chunks / progress.total_chunks * 100)
            remaining = progress.total_chunks - completed_chunks
            if completed_chunks and remaining:
                elapsed = get_utc_now() - progress.start_time
                progress.estimated_completion = get_utc_now() + elapsed / completed_chunks * remaining

        if progress.overall_status in SequentialStatus.TERMINAL:
            progress.current_chunk = None
            progress.estimated_completion = None
            self._schedule_cleanup(parent_job_id)
        return progress

    def add_chunk_error(self, parent_job_id: str, chunk_number: int, start_date: date, end_date: date, message: str):
        progress = self._sequential.get(parent_job_id)
        if progress is None:
            return
        progress.errors.append(ChunkError(chunk_number, start_date, end_date, message))

    def get_sequential(self, parent_job_id: str) -> Optional[SequentialProgress]:
        return self._sequential.get(parent_job_id)

    # ==================== Cleanup ====================

    def _schedule_cleanup(self, job_id: str):
        if job_id in self._cleanup_handles:
            return
        loop = asyncio.get_running_loop()
        self._cleanup_handles[job_id] = loop.call_later(self.retention_seconds, self._discard, job_id)

    def _discard(self, job_id: str):
        self._cleanup_handles.pop(job_id, None)
        snapshot = self._snapshots.get(job_id)
        if snapshot is not None and snapshot.status in JobStatus.TERMINAL:
            del self._snapshots[job_id]
        progress = self._sequential.get(job_id)
        if progress is not None and progress.overall_status in SequentialStatus.TERMINAL:
            del self._sequential[job_id]
        logger.debug(f"Discarded progress for job {job_id}")

    def close(self):
        """Cancel pending cleanups."""
        for handle in self._cleanup_handles.values():
            handle.cancel()
        self._cleanup_handles.clear()
