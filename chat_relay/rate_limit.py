"""Fixed-window request counting keyed by client address."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitBucket:
    count: int
    reset_at: float


class RateLimiter:
    """Admit at most ``max_requests`` per ``window_seconds`` for each key.

    A window opens on the first request after the previous one expired, so
    bursts straddling a window boundary are allowed. Rejected requests still
    count. Buckets live for the life of the process; :meth:`sweep` drops the
    expired ones and runs on its own at most once per window.

    Each key has its own lock around the read-increment-compare step. The lock
    registry itself is guarded by a single lock that is only held while a
    bucket is looked up or created.
    """

    def __init__(self, window_seconds: float, max_requests: int) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._next_sweep: Optional[float] = None

    def __len__(self) -> int:
        return len(self._buckets)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def admit(self, client_key: str, now: Optional[float] = None) -> bool:
        """Count one request for ``client_key`` and report whether it is allowed."""
        now = time.monotonic() if now is None else now
        self._maybe_sweep(now)

        with self._lock_for(client_key):
            bucket = self._buckets.get(client_key)
            if bucket is None or now > bucket.reset_at:
                self._buckets[client_key] = RateLimitBucket(count=1, reset_at=now + self.window_seconds)
                return True

            bucket.count += 1
            allowed = bucket.count <= self.max_requests
        if not allowed:
            logger.warning("Rate limit exceeded for %s (%d requests in window)", client_key, bucket.count)
        return allowed

    def retry_after(self, client_key: str, now: Optional[float] = None) -> int:
        """Whole seconds until the key's current window resets."""
        now = time.monotonic() if now is None else now
        bucket = self._buckets.get(client_key)
        if bucket is None:
            return 0
        return max(0, math.ceil(bucket.reset_at - now))

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop buckets whose window has expired. Returns how many were removed."""
        now = time.monotonic() if now is None else now
        removed = 0
        with self._registry_lock:
            for key in list(self._buckets):
                bucket = self._buckets.get(key)
                if bucket is not None and now > bucket.reset_at:
                    del self._buckets[key]
                    self._locks.pop(key, None)
                    removed += 1
        if removed:
            logger.debug("Swept %d expired rate limit bucket(s)", removed)
        return removed

    def _maybe_sweep(self, now: float) -> None:
        if self._next_sweep is None:
            self._next_sweep = now + self.window_seconds
            return
        if now >= self._next_sweep:
            self._next_sweep = now + self.window_seconds
            self.sweep(now)
