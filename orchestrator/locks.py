"""Process-local download locks."""
import logging
from typing import Dict, List, Optional

from orchestrator.models import DownloadLock
from shared.utils import environment_label

logger = logging.getLogger(__name__)


class LockTable:
    """
    At most one lock per key.

    `acquire` is a plain check-and-set with no await inside, so two triggers
    racing on the same event loop cannot both take a key.
    """

    def __init__(self):
        self._locks: Dict[str, DownloadLock] = {}

    @staticmethod
    def make_key(job_type: str, tenant_id: int, is_live: bool, scope: str) -> str:
        return f"{job_type}:{tenant_id}:{environment_label(is_live)}:{scope}"

    def get(self, key: str) -> Optional[DownloadLock]:
        return self._locks.get(key)

    def acquire(self, lock: DownloadLock) -> Optional[DownloadLock]:
        """Take `lock.key`. Returns the current holder instead if the key is taken."""
        held = self._locks.get(lock.key)
        if held is not None:
            return held
        self._locks[lock.key] = lock
        logger.debug(f"Lock {lock.key} acquired by job {lock.job_id}")
        return None

    def release(self, key: str, job_id: str) -> bool:
        """Release `key` only if `job_id` still owns it."""
        held = self._locks.get(key)
        if held is None or held.job_id != job_id:
            return False
        del self._locks[key]
        return True

    def release_for_job(self, job_id: str) -> int:
        """Drop every lock referencing `job_id`."""
        keys = [key for key, lock in self._locks.items() if lock.job_id == job_id]
        for key in keys:
            del self._locks[key]
        if keys:
            logger.info(f"Released {len(keys)} lock(s) held by job {job_id}")
        return len(keys)

    def list(self) -> List[DownloadLock]:
        return list(self._locks.values())

    def clear(self) -> int:
        count = len(self._locks)
        self._locks.clear()
        return count

    def __len__(self) -> int:
        return len(self._locks)
