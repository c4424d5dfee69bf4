# Copyright (C) 2024 Luna Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Token bucket rate limiter tests."""

import threading

import pytest

from luna_server.errors import RateLimitedError
from luna_server.rate_limit import TokenBucketLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_allows_capacity_then_rejects():
    limiter = TokenBucketLimiter(capacity=3, period=300, clock=FakeClock())
    for _ in range(3):
        limiter.check("login", "1.2.3.4:a@x.com")
    with pytest.raises(RateLimitedError) as exc:
        limiter.check("login", "1.2.3.4:a@x.com")
    assert exc.value.retry_after == 300


def test_refills_after_full_period_only():
    clock = FakeClock()
    limiter = TokenBucketLimiter(capacity=2, period=60, clock=clock)
    limiter.check("register", "ip")
    limiter.check("register", "ip")
    clock.now += 59
    with pytest.raises(RateLimitedError) as exc:
        limiter.check("register", "ip")
    assert exc.value.retry_after == 1
    clock.now += 1
    limiter.check("register", "ip")
    limiter.check("register", "ip")
    with pytest.raises(RateLimitedError):
        limiter.check("register", "ip")


def test_buckets_are_per_action_and_key():
    limiter = TokenBucketLimiter(capacity=1, period=60, clock=FakeClock())
    limiter.check("login", "a")
    limiter.check("login", "b")
    limiter.check("register", "a")
    with pytest.raises(RateLimitedError):
        limiter.check("login", "a")


def test_per_action_limits_override_default():
    limiter = TokenBucketLimiter(
        capacity=1, period=60, limits={"verify_email": (5, 60)}, clock=FakeClock()
    )
    for _ in range(5):
        limiter.check("verify_email", "a@x.com")
    with pytest.raises(RateLimitedError):
        limiter.check("verify_email", "a@x.com")


def test_prune_drops_only_refilled_buckets():
    clock = FakeClock()
    limiter = TokenBucketLimiter(capacity=2, period=60, clock=clock)
    limiter.check("login", "old")
    clock.now += 61
    limiter.check("login", "fresh")
    assert limiter.prune() == 1
    # "fresh" still holds its consumed token
    limiter.check("login", "fresh")
    with pytest.raises(RateLimitedError):
        limiter.check("login", "fresh")


def test_concurrent_consumers_never_exceed_capacity():
    limiter = TokenBucketLimiter(capacity=50, period=3600)
    allowed = []
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            if limiter.try_consume("login", "shared") == 0:
                with lock:
                    allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(allowed) == 50
