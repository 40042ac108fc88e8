"""Unit tests for the sliding-window admission limiter."""
from __future__ import annotations

import pytest

from session.rate_limit import SlidingWindowRateLimiter


class Clock:
    def __init__(self) -> None:
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def limiter(clock: Clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(clock=clock)


def test_admits_up_to_limit(limiter: SlidingWindowRateLimiter) -> None:
    assert [limiter.allow("a", 3, 60) for _ in range(4)] == [(True, 1), (True, 2), (True, 3), (False, 3)]


def test_window_slides(limiter: SlidingWindowRateLimiter, clock: Clock) -> None:
    limiter.allow("a", 2, 60)
    clock.t += 30
    limiter.allow("a", 2, 60)
    assert limiter.allow("a", 2, 60)[0] is False
    assert limiter.retry_after("a", 60) == pytest.approx(30)

    clock.t += 31
    assert limiter.count("a", 60) == 1
    assert limiter.allow("a", 2, 60) == (True, 2)


def test_keys_are_independent(limiter: SlidingWindowRateLimiter) -> None:
    limiter.allow("a", 1, 60)
    assert limiter.allow("a", 1, 60)[0] is False
    assert limiter.allow("b", 1, 60)[0] is True


def test_non_positive_limit_disables(limiter: SlidingWindowRateLimiter) -> None:
    assert all(limiter.allow("a", 0, 60)[0] for _ in range(5))
    assert limiter.retry_after("a", 60) == 0.0


def test_reset_clears_buckets(limiter: SlidingWindowRateLimiter) -> None:
    limiter.allow("a", 1, 60)
    limiter.reset()
    assert limiter.allow("a", 1, 60) == (True, 1)
