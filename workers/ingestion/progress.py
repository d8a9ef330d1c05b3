"""
Upload progress tracking.

Polling clients read an UploadProgress per lab result id. The in-process
store suits a single API process running background tasks; the Redis store
shares progress between the API and RQ workers.
"""

import json
import threading
import time
import logging
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Any, Tuple

logger = logging.getLogger(__name__)

UPLOADING = "uploading"
PROCESSING = "processing"
EXTRACTING = "extracting"
SUMMARIZING = "summarizing"
COMPLETED = "completed"
ERROR = "error"
RETRYING = "retrying"

STATUSES = (UPLOADING, PROCESSING, EXTRACTING, SUMMARIZING, COMPLETED, ERROR, RETRYING)
TERMINAL_STATUSES = (COMPLETED, ERROR)


@dataclass
class UploadProgress:
    lab_result_id: int
    status: str
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None

    def __post_init__(self):
        if self.status not in STATUSES:
            raise ValueError(f"Unknown upload status: {self.status}")
        self.progress = max(0, min(100, int(self.progress)))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _advance(current: Optional[UploadProgress], update: UploadProgress) -> UploadProgress:
    """Progress never moves backwards, even through retries."""
    if current is not None and update.progress < current.progress:
        update.progress = current.progress
    return update


class ProgressStore:
    """Interface for progress storage keyed by lab result id."""

    def update(
        self,
        lab_result_id: int,
        status: str,
        progress: int,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> UploadProgress:
        raise NotImplementedError

    def get(self, lab_result_id: int) -> Optional[UploadProgress]:
        raise NotImplementedError

    def discard(self, lab_result_id: int) -> None:
        raise NotImplementedError


class InMemoryProgressStore(ProgressStore):
    """Thread-safe in-process map; terminal entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: int = 300, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, Tuple[UploadProgress, Optional[float]]] = {}
        self._lock = threading.Lock()

    def update(self, lab_result_id, status, progress, message=None, error=None) -> UploadProgress:
        with self._lock:
            current = self._entries.get(lab_result_id)
            entry = _advance(
                current[0] if current else None,
                UploadProgress(lab_result_id, status, progress, message, error),
            )
            expires_at = self._clock() + self.ttl_seconds if entry.is_terminal else None
            self._entries[lab_result_id] = (entry, expires_at)
            return entry

    def get(self, lab_result_id: int) -> Optional[UploadProgress]:
        with self._lock:
            self._purge_expired()
            found = self._entries.get(lab_result_id)
            return found[0] if found else None

    def discard(self, lab_result_id: int) -> None:
        with self._lock:
            self._entries.pop(lab_result_id, None)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._entries[key]


class RedisProgressStore(ProgressStore):
    """Progress shared through Redis; terminal entries get a TTL."""

    KEY_PREFIX = "lab_progress:"

    def __init__(self, redis_client, ttl_seconds: int = 300):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    def _key(self, lab_result_id: int) -> str:
        return f"{self.KEY_PREFIX}{lab_result_id}"

    def update(self, lab_result_id, status, progress, message=None, error=None) -> UploadProgress:
        entry = _advance(
            self.get(lab_result_id),
            UploadProgress(lab_result_id, status, progress, message, error),
        )
        payload = json.dumps(entry.to_dict())
        if entry.is_terminal:
            self.redis.setex(self._key(lab_result_id), self.ttl_seconds, payload)
        else:
            self.redis.set(self._key(lab_result_id), payload)
        return entry

    def get(self, lab_result_id: int) -> Optional[UploadProgress]:
        raw = self.redis.get(self._key(lab_result_id))
        if raw is None:
            return None
        return UploadProgress(**json.loads(raw))

    def discard(self, lab_result_id: int) -> None:
        self.redis.delete(self._key(lab_result_id))


def build_progress_store(settings, redis_client=None) -> ProgressStore:
    if settings.progress.backend == "redis":
        if redis_client is None:
            from backend.core.queue import get_redis
            redis_client = get_redis()
        return RedisProgressStore(redis_client, ttl_seconds=settings.progress.ttl_seconds)
    return InMemoryProgressStore(ttl_seconds=settings.progress.ttl_seconds)
