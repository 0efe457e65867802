"""
In-process TTL cache and a fixed-window rate limiter built on it.

Both live only as long as the worker process: a restart or a new serverless
instance starts with an empty cache.
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Optional, Tuple


class TTLCache:
    def __init__(self, ttl: float, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[Any, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return default
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._data[key]
                return default
            return value

    def set(self, key, value, ttl: Optional[float] = None):
        with self._lock:
            now = self._clock()
            self._data.pop(key, None)
            self._data[key] = (now + (ttl or self.ttl), value)
            self._evict(now)

    def delete(self, key):
        with self._lock:
            self._data.pop(key, None)

    def clear(self):
        with self._lock:
            self._data.clear()

    def __len__(self):
        with self._lock:
            self._purge_expired(self._clock())
            return len(self._data)

    def _purge_expired(self, now: float):
        for key in [k for k, (exp, _) in self._data.items() if now >= exp]:
            del self._data[key]

    def _evict(self, now: float):
        if len(self._data) <= self.max_entries:
            return
        self._purge_expired(now)
        # Oldest insertions go first
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)


class RateLimiter:
    """Allow ``limit`` hits per key within each ``window`` seconds."""

    def __init__(self, limit: int, window: float, cache: Optional[TTLCache] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._cache = cache if cache is not None else TTLCache(ttl=window, clock=clock)
        self._lock = threading.Lock()

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record a hit; returns (allowed, remaining)."""
        with self._lock:
            now = self._clock()
            record = self._cache.get(key)
            if record is None:
                self._cache.set(key, {"count": 1, "reset_at": now + self.window}, ttl=self.window)
                return True, self.limit - 1

            if record["count"] >= self.limit:
                return False, 0

            record["count"] += 1
            return True, self.limit - record["count"]

    def retry_after(self, key: str) -> int:
        record = self._cache.get(key)
        if record is None:
            return 0
        return max(0, int(record["reset_at"] - self._clock() + 0.999))
