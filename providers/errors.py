"""Map vendor/transport exceptions onto the provider error taxonomy."""

from __future__ import annotations

import requests

from core.exceptions import (
    ProviderAuthError,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)

AUTH_STATUSES = frozenset({401, 403})
REJECTED_STATUSES = frozenset({400, 404, 405, 413, 415, 422})


def classify_status(status: int, message: str, provider: str) -> ProviderError:
    """HTTP status -> ProviderError subclass. 429 and 5xx are transient."""
    if status in AUTH_STATUSES:
        return ProviderAuthError(f"{provider}: HTTP {status} {message}", provider=provider)
    if status == 429 or status >= 500:
        return ProviderUnavailable(f"{provider}: HTTP {status} {message}", provider=provider)
    if status in REJECTED_STATUSES or 400 <= status < 500:
        return ProviderRejected(f"{provider}: HTTP {status} {message}", provider=provider)
    return ProviderUnavailable(f"{provider}: HTTP {status} {message}", provider=provider)


def classify_exception(exc: BaseException, provider: str) -> ProviderError:
    """
    Normalize any exception raised inside a provider call.
    Already-classified ProviderErrors pass through with the provider name filled in.
    """
    if isinstance(exc, ProviderError):
        if not exc.provider:
            exc.provider = provider
        return exc
    if isinstance(exc, (requests.Timeout, TimeoutError)):
        return ProviderTimeout(f"{provider}: timed out ({exc})", provider=provider)
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else 0
        return classify_status(status, str(exc), provider)
    if isinstance(exc, requests.ConnectionError):
        return ProviderUnavailable(f"{provider}: connection failed ({exc})", provider=provider)
    if isinstance(exc, ValueError):
        # undecodable image, unsupported format, bad JSON body
        return ProviderRejected(f"{provider}: {exc}", provider=provider)
    return ProviderUnavailable(f"{provider}: {type(exc).__name__}: {exc}", provider=provider)
