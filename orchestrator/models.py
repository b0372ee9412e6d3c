"""In-memory types for download orchestration."""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass
class DownloadChunk:
    """One window of a chunked historical download (inclusive dates)."""
    chunk_number: int
    start_date: date
    end_date: date

    @property
    def day_count(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_number": self.chunk_number,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "day_count": self.day_count,
        }


@dataclass
class DownloadLock:
    """Marks a (type, tenant, environment, scope) key as owned by a job."""
    key: str
    job_id: str
    lock_type: str
    locked_by: int
    locked_at: datetime
    scheme_ids: List[int] = field(default_factory=list)


@dataclass
class ProgressSnapshot:
    job_id: str
    job_type: str
    status: str
    progress_percentage: int
    current_step: str
    total_schemes: int
    start_time: datetime
    last_update: datetime
    processed_schemes: int = 0
    processed_records: int = 0
    errors: List[str] = field(default_factory=list)
    estimated_time_remaining_ms: Optional[int] = None
    parent_job_id: Optional[str] = None
    total_chunks: Optional[int] = None
    completed_chunks: Optional[int] = None
    current_chunk: Optional[Dict[str, Any]] = None


@dataclass
class ChunkError:
    chunk_number: int
    start_date: date
    end_date: date
    message: str


@dataclass
class SequentialProgress:
    """Aggregate progress of a parent job across its chunks."""
    parent_job_id: str
    total_chunks: int
    overall_status: str
    start_time: datetime
    completed_chunks: int = 0
    progress_percentage: int = 0
    current_chunk: Optional[Dict[str, Any]] = None
    errors: List[ChunkError] = field(default_factory=list)
    estimated_completion: Optional[datetime] = None


@dataclass
class TriggerResult:
    """What a trigger call hands back to its caller."""
    job_id: Optional[str]
    message: str
    already_in_progress: bool = False
    already_exists: bool = False
    total_schemes: int = 0
    chunks: List[DownloadChunk] = field(default_factory=list)
    estimated_time_ms: Optional[int] = None

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)
