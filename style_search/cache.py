"""
Feature vector cache with time-based expiry and a capacity bound.

Extracted vectors are kept in a keyed string store (one JSON document
under a single key) so repeated searches against the same catalogue skip
image decoding. Lifecycle:

    - starts empty; entries older than the freshness window are dropped
      every time the document is loaded
    - every write keeps only the newest `capacity` entries by creation time
      (insertion recency, not access recency)
    - `clear()` removes the document

A storage write failure clears the cache and disables it for the rest of
the session; callers then always recompute. Access is serialized with a
lock so one cache can be shared by several matchers in a process.
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from .errors import CacheWriteError

logger = logging.getLogger(__name__)

CACHE_KEY = "image_features_cache"
CACHE_TTL_DAYS = float(os.environ.get("FEATURE_CACHE_TTL_DAYS", "7"))
CACHE_CAPACITY = int(os.environ.get("FEATURE_CACHE_CAPACITY", "100"))

MS_PER_DAY = 24 * 60 * 60 * 1000


class MemoryStorage:
    """
    Process-local string store.

    Args:
        quota: Optional maximum length of a stored value. Larger writes
            raise CacheWriteError, like a browser storage quota would.
    """

    def __init__(self, quota: Optional[int] = None):
        self.quota = quota
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        if self.quota is not None and len(value) > self.quota:
            raise CacheWriteError(
                f"Value of {len(value)} chars exceeds storage quota of {self.quota}"
            )
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileStorage:
    """String store backed by one file per key in a directory."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.error(f"Could not read cache file {path}: {e}")
            return None

    def write(self, key: str, value: str) -> None:
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(self._path(key), "w", encoding="utf-8") as f:
                f.write(value)
        except OSError as e:
            raise CacheWriteError(f"Could not write cache file: {e}") from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)


@dataclass(frozen=True)
class CacheEntry:
    id: str
    source_url: str
    vector: np.ndarray
    created_at: float  # epoch milliseconds

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_url": self.source_url,
            "features": [float(v) for v in self.vector],
            "timestamp": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        vector = np.asarray(data["features"], dtype=np.float32)
        vector.setflags(write=False)
        return cls(
            id=str(data["id"]),
            source_url=str(data.get("source_url", "")),
            vector=vector,
            created_at=float(data["timestamp"]),
        )


@dataclass(frozen=True)
class CacheStats:
    count: int
    size: int
    oldest: Optional[float]
    newest: Optional[float]


class FeatureCache:
    """
    Image id → feature vector cache over a keyed string store.

    Args:
        storage: Object with read(key), write(key, value) and delete(key).
            Defaults to a new MemoryStorage.
        clock: Callable returning the current time in seconds.
        ttl_days: Freshness window; older entries read as absent.
        capacity: Maximum number of entries kept after a write.
        key: Storage key holding the JSON document.
    """

    def __init__(self,
                 storage=None,
                 clock: Callable[[], float] = time.time,
                 ttl_days: float = CACHE_TTL_DAYS,
                 capacity: int = CACHE_CAPACITY,
                 key: str = CACHE_KEY):
        self.storage = storage if storage is not None else MemoryStorage()
        self.clock = clock
        self.ttl_ms = ttl_days * MS_PER_DAY
        self.capacity = capacity
        self.key = key
        self.enabled = True
        self._lock = threading.Lock()

    def _now_ms(self) -> float:
        return self.clock() * 1000.0

    def _load(self) -> List[CacheEntry]:
        raw = self.storage.read(self.key)
        if not raw:
            return []
        try:
            entries = [CacheEntry.from_dict(d) for d in json.loads(raw)]
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Discarding unreadable feature cache: {e}")
            return []

        now = self._now_ms()
        return [e for e in entries if now - e.created_at < self.ttl_ms]

    def _save(self, entries: List[CacheEntry]) -> None:
        if len(entries) > self.capacity:
            # Newest first; among equal timestamps the later insertion wins
            ordered = sorted(enumerate(entries),
                             key=lambda p: (p[1].created_at, p[0]), reverse=True)
            entries = [e for _, e in ordered[:self.capacity]]
        try:
            self.storage.write(self.key, json.dumps([e.to_dict() for e in entries]))
        except CacheWriteError as e:
            logger.error(f"Feature cache write failed, disabling cache: {e}")
            self.enabled = False
            self._clear_storage()

    def _clear_storage(self) -> None:
        try:
            self.storage.delete(self.key)
        except (OSError, CacheWriteError) as e:
            logger.error(f"Could not clear feature cache: {e}")

    def get(self, image_id: str) -> Optional[np.ndarray]:
        """Return the cached vector for `image_id`, or None if absent or expired."""
        if not self.enabled:
            return None
        with self._lock:
            for entry in reversed(self._load()):
                if entry.id == image_id:
                    logger.debug(f"Feature cache hit: {image_id}")
                    return entry.vector
        return None

    def put(self, image_id: str, source_url: str, vector: np.ndarray) -> None:
        """Store a vector, replacing any previous entry for the same id."""
        if not self.enabled:
            return
        stored = np.array(vector, dtype=np.float32)
        stored.setflags(write=False)
        with self._lock:
            entries = [e for e in self._load() if e.id != image_id]
            entries.append(CacheEntry(image_id, source_url, stored, self._now_ms()))
            self._save(entries)

    def clear(self) -> None:
        with self._lock:
            self._clear_storage()
        logger.info("Feature cache cleared")

    def stats(self) -> CacheStats:
        with self._lock:
            entries = self._load()
        timestamps = [e.created_at for e in entries]
        return CacheStats(
            count=len(entries),
            size=len(json.dumps([e.to_dict() for e in entries])),
            oldest=min(timestamps) if timestamps else None,
            newest=max(timestamps) if timestamps else None,
        )

    def __len__(self) -> int:
        return self.stats().count
