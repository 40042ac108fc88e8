"""Conversational session gate: state machine, session store, rate limiter."""

from session.rate_limit import SlidingWindowRateLimiter
from session.state_machine import (
    CONFIRMATION_ACTIONS,
    SessionStateMachine,
    dedup_keys,
    kind_hint_from_text,
    summarize_result,
)
from session.store import InMemorySessionStore

__all__ = [
    "CONFIRMATION_ACTIONS",
    "InMemorySessionStore",
    "SessionStateMachine",
    "SlidingWindowRateLimiter",
    "dedup_keys",
    "kind_hint_from_text",
    "summarize_result",
]
