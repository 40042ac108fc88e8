"""Retry with exponential backoff and jitter. No global state."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)
T = TypeVar("T")


def backoff_delay(
    attempt: int,
    delay_sec: float,
    jitter_sec: float = 0.0,
    backoff: bool = True,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before retry number attempt+1 (attempt is 0-based)."""
    base = delay_sec * (2**attempt) if backoff else delay_sec
    if jitter_sec <= 0:
        return base
    r = rng or random
    return base + r.uniform(0.0, jitter_sec)


def with_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    delay_sec: float = 2.0,
    backoff: bool = True,
    retry_exceptions: tuple[type[Exception], ...] = (Exception,),
    jitter_sec: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Execute fn; on retry_exceptions retry with exponential backoff (+ optional jitter).
    Raises last exception after max_attempts.
    """
    max_attempts = max(1, max_attempts)
    for attempt in range(max_attempts):
        try:
            return fn()
        except retry_exceptions as e:
            if attempt >= max_attempts - 1:
                raise
            wait = backoff_delay(attempt, delay_sec, jitter_sec, backoff)
            logger.warning(
                "Retry attempt %s/%s after %.2fs: %s",
                attempt + 1,
                max_attempts,
                wait,
                e,
            )
            sleep(wait)
    raise RuntimeError("retry exhausted")
