"""
Rate Limiter
Request throttling and a bounded TTL cache for third-party API calls.

One instance is built per process and handed to the clients that need it;
nothing here is a module-level singleton.
"""

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    """Outcome of a rate-limit check"""

    allowed: bool
    wait_seconds: float = 0.0
    reason: Optional[str] = None


@dataclass
class RequestRecord:
    timestamps: Deque[float] = field(default_factory=deque)
    last_request: float = float("-inf")


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class RateLimiter:
    """Sliding-window rate limiter with a size-bounded TTL cache."""

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        min_interval_seconds: float = 0.2,
        cache_ttl_seconds: float = 300.0,
        max_cache_entries: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_cache_entries < 1:
            raise ValueError("max_cache_entries must be at least 1")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.min_interval_seconds = min_interval_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_cache_entries = max_cache_entries
        self._clock = clock
        self._records: Dict[str, RequestRecord] = {}
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Throttling
    # -------------------------------------------------------------------------

    def check(self, key: str) -> RateLimitDecision:
        """Check if a request for `key` can proceed right now."""
        now = self._clock()
        with self._lock:
            record = self._records.setdefault(key, RequestRecord())

            window_start = now - self.window_seconds
            while record.timestamps and record.timestamps[0] <= window_start:
                record.timestamps.popleft()

            if len(record.timestamps) >= self.max_requests:
                wait = record.timestamps[0] + self.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    wait_seconds=wait,
                    reason=(
                        f"Rate limit exceeded. Max {self.max_requests} requests "
                        f"per {self.window_seconds:g}s"
                    ),
                )

            since_last = now - record.last_request
            if since_last < self.min_interval_seconds:
                return RateLimitDecision(
                    allowed=False,
                    wait_seconds=self.min_interval_seconds - since_last,
                    reason="Too frequent. Please wait.",
                )

        return RateLimitDecision(allowed=True)

    def record(self, key: str) -> None:
        """Record that a request for `key` was made."""
        now = self._clock()
        with self._lock:
            record = self._records.setdefault(key, RequestRecord())
            record.timestamps.append(now)
            record.last_request = now

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def get_cached(self, key: str) -> Optional[Any]:
        """Return the cached value for `key`, or None if missing or expired."""
        now = self._clock()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None

            if now > entry.expires_at:
                del self._cache[key]
                return None

            self._cache.move_to_end(key)
            return entry.value

    def set_cached(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store `value`, evicting expired entries first and then the least recently used."""
        now = self._clock()
        ttl = self.cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._cache[key] = CacheEntry(value=value, expires_at=now + ttl)
            self._cache.move_to_end(key)

            if len(self._cache) > self.max_cache_entries:
                self._evict_expired(now)

            while len(self._cache) > self.max_cache_entries:
                evicted, _ = self._cache.popitem(last=False)
                logger.debug(f"Evicted cache entry: {evicted}")

    def clear_expired(self) -> int:
        """Drop every expired cache entry. Returns how many were removed."""
        with self._lock:
            return self._evict_expired(self._clock())

    def _evict_expired(self, now: float) -> int:
        expired = [key for key, entry in self._cache.items() if now > entry.expires_at]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "cache_size": len(self._cache),
                "max_cache_entries": self.max_cache_entries,
                "tracked_keys": len(self._records),
            }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._cache.clear()

    # -------------------------------------------------------------------------
    # Cache keys
    # -------------------------------------------------------------------------

    @staticmethod
    def directions_key(origin, destination, mode: str = "DRIVE") -> str:
        """Cache key for a directions lookup, coordinates rounded to ~10 m"""
        return (
            f"directions:{origin[0]:.4f},{origin[1]:.4f}|"
            f"{destination[0]:.4f},{destination[1]:.4f}|{mode}"
        )
