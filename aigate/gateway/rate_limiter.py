"""Fixed-window rate limiter keyed by caller identity.

One bucket per (endpoint class, admission key). A bucket past its window
end is replaced with a fresh one rather than reset in place. Expired
buckets are also swept lazily, at most once per SWEEP_INTERVAL_MS, to bound
memory; correctness only relies on the expiry check at lookup.

State is per process. Separate instances do not share buckets, so this is
a guardrail against abuse, not a globally consistent limiter.
"""

from __future__ import annotations

import logging
import math
import threading
import time

from aigate.core.config import MIN_WINDOW_MS
from aigate.gateway.types import RateBucket, RateLimitResult

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_MS = 60_000


def now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """In-memory fixed-window counter.

    Usage:
        limiter = FixedWindowRateLimiter()

        result = limiter.check("chat:ip:1.2.3.4", window_ms=60_000, max_count=10)
        if not result.ok:
            # reject with Retry-After: result.retry_after_seconds
            ...
    """

    def __init__(self, sweep_interval_ms: int = SWEEP_INTERVAL_MS):
        self._buckets: dict[str, RateBucket] = {}
        self._lock = threading.Lock()
        self._sweep_interval_ms = sweep_interval_ms
        self._last_sweep_at = 0

    def check(self, key: str, window_ms: int, max_count: int, now: int | None = None) -> RateLimitResult:
        """Count one request against `key` and decide whether it may proceed."""
        now = now_ms() if now is None else int(now)
        window_ms = max(MIN_WINDOW_MS, int(window_ms))
        max_count = max(1, int(max_count))

        with self._lock:
            self._sweep(now)

            bucket = self._buckets.get(key)
            if bucket is None or bucket.expired(now):
                bucket = RateBucket(key=key, window_ends_at=now + window_ms, remaining=max_count - 1)
                self._buckets[key] = bucket
                return RateLimitResult(ok=True, remaining=bucket.remaining, reset_at=bucket.window_ends_at)

            if bucket.remaining <= 0:
                retry_after = max(1, math.ceil((bucket.window_ends_at - now) / 1000))
                return RateLimitResult(
                    ok=False,
                    remaining=0,
                    reset_at=bucket.window_ends_at,
                    retry_after_seconds=retry_after,
                )

            bucket = RateBucket(key=key, window_ends_at=bucket.window_ends_at, remaining=bucket.remaining - 1)
            self._buckets[key] = bucket
            return RateLimitResult(ok=True, remaining=bucket.remaining, reset_at=bucket.window_ends_at)

    def _sweep(self, now: int) -> None:
        """Drop expired buckets. Caller holds the lock."""
        if now - self._last_sweep_at < self._sweep_interval_ms:
            return
        self._last_sweep_at = now

        expired = [k for k, b in self._buckets.items() if b.expired(now)]
        for k in expired:
            del self._buckets[k]
        if expired:
            logger.debug("Swept %d expired rate-limit buckets", len(expired))

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)

    def get_stats(self) -> dict:
        """Current limiter state for the health endpoint."""
        with self._lock:
            return {
                "buckets": len(self._buckets),
                "last_sweep_at": self._last_sweep_at,
            }

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._last_sweep_at = 0
