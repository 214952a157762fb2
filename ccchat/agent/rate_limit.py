"""Token-bucket rate limiting for backend invocations.

Buckets refill lazily from elapsed wall-clock time at each consumption
attempt. There is no background timer and no queueing: a rejected attempt
returns immediately and the caller decides how to respond.
"""

from __future__ import annotations

import time


class TokenBucket:
    """Classic token bucket. Starts full; token count stays in ``[0, capacity]``."""

    def __init__(self, capacity: float, rate_per_sec: float) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1 token")
        if rate_per_sec < 0:
            raise ValueError("rate_per_sec must not be negative")
        self.capacity = float(capacity)
        self.rate_per_sec = float(rate_per_sec)
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_sec)
        self.last_refill = now

    def try_consume(self) -> bool:
        """Take one token if available. Returns True if allowed."""
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    @property
    def is_full(self) -> bool:
        self._refill()
        return self.tokens >= self.capacity


class RateLimiter:
    """Per-sender rate limiter using token buckets.

    Passing ``capacity=None`` disables limiting entirely: every attempt is
    allowed and no buckets are created.
    """

    def __init__(self, capacity: float | None = None, rate_per_sec: float = 0.0) -> None:
        self._capacity = capacity
        self._rate_per_sec = rate_per_sec
        self._buckets: dict[str, TokenBucket] = {}

    @property
    def enabled(self) -> bool:
        return self._capacity is not None

    def try_consume(self, sender_id: str) -> bool:
        """Check (and spend) one token for ``sender_id``."""
        if self._capacity is None:
            return True
        bucket = self._buckets.get(sender_id)
        if bucket is None:
            bucket = self._buckets.setdefault(
                sender_id, TokenBucket(self._capacity, self._rate_per_sec)
            )
        return bucket.try_consume()

    def cleanup_stale(self, max_age: float = 600.0) -> int:
        """Drop full buckets idle for ``max_age`` seconds. Returns count removed.

        A dropped bucket is recreated full on the sender's next message, which
        is exactly the state it would have refilled to.
        """
        now = time.monotonic()
        stale = [
            sid for sid, bucket in self._buckets.items()
            if (now - bucket.last_refill) > max_age and bucket.is_full
        ]
        for sid in stale:
            self._buckets.pop(sid, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)
