"""Custom exceptions for the document intake pipeline. No generic Exception usage."""

from __future__ import annotations

from typing import Any


class IntakeError(Exception):
    """Base exception for pipeline failures."""

    def __init__(self, message: str, trace_id: str | None = None) -> None:
        self.trace_id = trace_id or ""
        super().__init__(message)


class ConfigError(IntakeError):
    """Invalid or missing configuration."""

    pass


# ---------------------------------------------------------------------------
# Provider failures (absorbed by the orchestrator, never pipeline-fatal)
# ---------------------------------------------------------------------------


class ProviderError(IntakeError):
    """One provider call failed."""

    retryable = False

    def __init__(self, message: str, provider: str = "", trace_id: str | None = None) -> None:
        self.provider = provider
        super().__init__(message, trace_id=trace_id)


class ProviderTimeout(ProviderError):
    """Provider did not answer within its hard timeout."""

    retryable = True


class ProviderUnavailable(ProviderError):
    """Transient provider failure (5xx, connection reset)."""

    retryable = True


class ProviderAuthError(ProviderError):
    """Credentials rejected (401/403). Never retried."""

    pass


class ProviderRejected(ProviderError):
    """Provider refused the input (unsupported format, payload too large)."""

    pass


class ProviderCancelled(ProviderError):
    """The owning request was cancelled while the call was in flight."""

    pass


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class MalformedExtraction(IntakeError):
    """Structured extraction output could not be parsed, even after one repair attempt."""

    def __init__(
        self,
        message: str,
        *,
        raw_output: str = "",
        partial: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> None:
        self.raw_output = raw_output
        self.partial = partial or {}
        super().__init__(message, trace_id=trace_id)


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------


class ReviewQueueError(IntakeError):
    """Review queue operation failed."""

    pass


class InvalidTransition(ReviewQueueError):
    """Requested status change is not allowed from the item's current status."""

    pass


class ItemNotFound(ReviewQueueError):
    """No review queue item with that id."""

    pass


# ---------------------------------------------------------------------------
# User-facing session outcomes
# ---------------------------------------------------------------------------


class SessionExpired(IntakeError):
    """Caller's session timed out; pointer to pending document was cleared."""

    pass


class RateLimitExceeded(IntakeError):
    """Caller exceeded the admission limit for the rolling window."""

    def __init__(self, message: str, retry_after_sec: float = 0.0, trace_id: str | None = None) -> None:
        self.retry_after_sec = retry_after_sec
        super().__init__(message, trace_id=trace_id)
