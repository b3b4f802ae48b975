"""
TTL Cache
=========

A small in-memory cache with two eviction rules:

1. **TTL-based**: entries not written or read within `ttl_seconds` are
   treated as absent and removed on the next access or sweep.

2. **LRU-based**: when the cache holds `capacity` entries, the least
   recently used 10% (at least one) are evicted to make room.

The clock is injected so expiry can be tested without sleeping. Every
instance is owned by the component that needs it; there is no module-level
cache.

Thread Safety:
--------------
All operations are protected by a threading.Lock. FastAPI runs sync
endpoints and to_thread calls on a worker pool, so the same cache can be
touched from several threads.

Usage:
------
    cache = TTLCache(capacity=500, ttl_seconds=300)
    cache.set("sku-1", modifiers)
    modifiers = cache.get("sku-1")  # None once expired
"""

import logging
import threading
import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """In-memory key/value cache with TTL expiry and LRU eviction."""

    def __init__(
        self,
        capacity: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        # {key: (value, last_access)}
        self._entries: Dict[K, Tuple[V, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def _is_expired(self, last_access: float, now: float) -> bool:
        return now - last_access > self.ttl_seconds

    def get(self, key: K) -> Optional[V]:
        """Return the value for `key`, refreshing its access time. None if absent or expired."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, last_access = entry
            if self._is_expired(last_access, now):
                del self._entries[key]
                return None
            self._entries[key] = (value, now)
            return value

    def set(self, key: K, value: V) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                self._evict(now)
            self._entries[key] = (value, now)

    def pop(self, key: K) -> Optional[V]:
        with self._lock:
            entry = self._entries.pop(key, None)
        return entry[0] if entry else None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, last_access) in self._entries.items() if self._is_expired(last_access, now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def _evict(self, now: float) -> None:
        """Make room for one entry. Caller holds the lock."""
        expired = [key for key, (_, last_access) in self._entries.items() if self._is_expired(last_access, now)]
        for key in expired:
            del self._entries[key]
        if len(self._entries) < self.capacity:
            return

        # Oldest 10% by last access
        count = max(1, self.capacity // 10)
        oldest = sorted(self._entries.items(), key=lambda item: item[1][1])[:count]
        for key, _ in oldest:
            del self._entries[key]
        logger.debug("Evicted %d least recently used cache entries", len(oldest))
