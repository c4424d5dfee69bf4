# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""In-memory token-bucket rate limiting for auth actions (brute-force protection)."""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request

from luna_server.config import settings
from luna_server.errors import RateLimitedError


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class TokenBucketLimiter:
    """
    Buckets keyed by (action, client key). Each bucket holds `capacity` tokens and is
    refilled to capacity in whole intervals of `period` seconds.

    `limits` overrides (capacity, period) per action. Safe to share between requests;
    the bucket table is guarded by a lock.
    """

    def __init__(
        self,
        capacity: int,
        period: float,
        limits: dict[str, tuple[int, float]] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.period = period
        self.limits = dict(limits or {})
        self._clock = clock
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._lock = threading.Lock()

    def _limit_for(self, action: str) -> tuple[int, float]:
        return self.limits.get(action, (self.capacity, self.period))

    def _refill(self, bucket: _Bucket, capacity: int, period: float, now: float) -> None:
        intervals = int((now - bucket.last_refill) // period)
        if intervals > 0:
            bucket.tokens = min(capacity, bucket.tokens + intervals * capacity)
            bucket.last_refill += intervals * period

    def try_consume(self, action: str, key: str) -> float:
        """Take one token. Returns 0 on success, else seconds until the next refill."""
        capacity, period = self._limit_for(action)
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get((action, key))
            if bucket is None:
                bucket = _Bucket(tokens=capacity, last_refill=now)
                self._buckets[(action, key)] = bucket
            self._refill(bucket, capacity, period, now)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return 0.0
            return max(bucket.last_refill + period - now, 0.0)

    def check(self, action: str, key: str) -> None:
        """Raise RateLimitedError if the bucket for (action, key) is empty."""
        wait = self.try_consume(action, key)
        if wait > 0:
            raise RateLimitedError(
                "Too many requests. Please try again later.",
                retry_after=max(1, math.ceil(wait)),
            )

    def prune(self) -> int:
        """Drop buckets that have refilled to capacity. Returns the number removed."""
        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._buckets):
                capacity, period = self._limit_for(key[0])
                bucket = self._buckets[key]
                self._refill(bucket, capacity, period, now)
                if bucket.tokens >= capacity:
                    del self._buckets[key]
                    removed += 1
        return removed


def client_ip(request: Request) -> str:
    """Prefer X-Forwarded-For when behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host or "unknown"
    return "unknown"


def build_limiter() -> TokenBucketLimiter:
    """Limiter configured from settings."""
    return TokenBucketLimiter(
        capacity=settings.rate_limit_capacity,
        period=settings.rate_limit_period_seconds,
    )
