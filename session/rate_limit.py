"""Sliding-window admission limiter keyed by caller id."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

_MAX_BUCKETS = 50_000
_PRUNE_INTERVAL_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    Check-and-increment is atomic under one lock, so two rapid uploads from the same
    caller can never both take the last slot.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_buckets: int = _MAX_BUCKETS,
        prune_interval_seconds: float = _PRUNE_INTERVAL_SECONDS,
    ) -> None:
        self._buckets: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._max_buckets = max_buckets
        self._prune_interval_seconds = max(1.0, float(prune_interval_seconds))
        self._last_prune_at = 0.0

    def allow(self, key: str, limit: int, window_seconds: float) -> tuple[bool, int]:
        """Admit one event for key if fewer than limit were admitted in the window. Returns (allowed, count)."""
        if limit <= 0 or window_seconds <= 0:
            return True, 0
        now = self._clock()
        with self._lock:
            if len(self._buckets) > self._max_buckets or (now - self._last_prune_at) >= self._prune_interval_seconds:
                self._prune_stale(now, window_seconds)
                self._last_prune_at = now

            bucket = self._buckets.setdefault(key, deque())
            self._evict(bucket, now - window_seconds)
            if len(bucket) >= limit:
                return False, len(bucket)
            bucket.append(now)
            return True, len(bucket)

    def retry_after(self, key: str, window_seconds: float) -> float:
        """Seconds until the oldest admission for key leaves the window (0 if none)."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0.0
            self._evict(bucket, now - window_seconds)
            if not bucket:
                return 0.0
            return max(0.0, bucket[0] + window_seconds - now)

    def count(self, key: str, window_seconds: float) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if not bucket:
                return 0
            self._evict(bucket, now - window_seconds)
            return len(bucket)

    @staticmethod
    def _evict(bucket: deque[float], cutoff: float) -> None:
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()

    def _prune_stale(self, now: float, window_seconds: float) -> None:
        """Remove buckets that have no recent entries (called under lock)."""
        cutoff = now - window_seconds
        stale_keys = []
        for key, bucket in self._buckets.items():
            self._evict(bucket, cutoff)
            if not bucket:
                stale_keys.append(key)
        for key in stale_keys:
            del self._buckets[key]

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_prune_at = 0.0
