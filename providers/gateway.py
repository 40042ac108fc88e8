"""
Capability provider gateway: executes exactly one provider call under a hard timeout,
classifies failures, and normalizes whatever the provider returned into RawRecognition.
Fallback ordering is not its concern (see pipeline.orchestrator).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Any

from core.exceptions import ProviderCancelled, ProviderError, ProviderRejected, ProviderTimeout
from core.interfaces import IRecognitionProvider
from core.models import RawRecognition
from providers.errors import classify_exception

logger = logging.getLogger(__name__)

# How often an in-flight call checks its cancel token
CANCEL_POLL_SEC = 0.05


class CancelToken:
    """Owner-side cancellation flag shared by every stage of one request."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; True if cancelled meanwhile."""
        return self._event.wait(max(0.0, timeout))


def normalize_recognition(provider: IRecognitionProvider, result: Any, elapsed_ms: float) -> RawRecognition:
    """
    Vendor shapes stop here. Accepts a RawRecognition, a (text, confidence) tuple or a dict
    with text/confidence keys; confidences on a 0-100 scale are rescaled.
    """
    spec = provider.spec
    if isinstance(result, RawRecognition):
        text, conf = result.text, result.native_confidence
    elif isinstance(result, tuple) and len(result) == 2:
        text, conf = result
    elif isinstance(result, dict):
        text = result.get("text") or result.get("content") or ""
        conf = result.get("confidence", result.get("native_confidence", 0.0))
    else:
        raise ProviderRejected(f"{spec.name}: unsupported response type {type(result).__name__}", provider=spec.name)
    try:
        conf = float(conf)
    except (TypeError, ValueError):
        conf = 0.0
    if conf > 1.0:
        conf = conf / 100.0
    base = result if isinstance(result, RawRecognition) else RawRecognition(provider=spec.name, text="", native_confidence=0.0)
    return replace(
        base,
        provider=spec.name,
        text=str(text or ""),
        native_confidence=max(0.0, min(1.0, conf)),
        elapsed_ms=elapsed_ms,
        cost=spec.cost,
    )


class ProviderGateway:
    """
    Runs provider calls on a gateway-owned thread pool so every call has a hard deadline
    and can be abandoned on cancellation. An abandoned call's late result is discarded.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider")

    def recognize(
        self,
        provider: IRecognitionProvider,
        data: bytes,
        *,
        cancel: CancelToken | None = None,
        trace_id: str = "",
    ) -> RawRecognition:
        """
        One call, one deadline. Raises ProviderTimeout, ProviderAuthError, ProviderRejected,
        ProviderUnavailable or ProviderCancelled; never returns a vendor-specific shape.
        """
        spec = provider.spec
        if cancel is not None and cancel.cancelled:
            raise ProviderCancelled(f"{spec.name}: request cancelled before call", provider=spec.name, trace_id=trace_id)

        start = time.perf_counter()
        deadline = start + spec.timeout_sec
        future: Future = self._executor.submit(provider.recognize, data, spec.timeout_sec)
        while True:
            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                future.cancel()
                logger.warning("Provider %s exceeded %.1fs trace_id=%s", spec.name, spec.timeout_sec, trace_id)
                raise ProviderTimeout(f"{spec.name}: no answer within {spec.timeout_sec}s", provider=spec.name, trace_id=trace_id)
            done, _ = wait([future], timeout=min(remaining, CANCEL_POLL_SEC))
            if done:
                break
            if cancel is not None and cancel.cancelled:
                future.cancel()
                raise ProviderCancelled(
                    f"{spec.name}: cancelled in flight ({cancel.reason})", provider=spec.name, trace_id=trace_id
                )

        try:
            result = future.result()
        except ProviderError as e:
            e.trace_id = e.trace_id or trace_id
            raise classify_exception(e, spec.name)
        except Exception as e:
            err = classify_exception(e, spec.name)
            err.trace_id = trace_id
            raise err from e

        if cancel is not None and cancel.cancelled:
            raise ProviderCancelled(f"{spec.name}: cancelled ({cancel.reason})", provider=spec.name, trace_id=trace_id)
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        return normalize_recognition(provider, result, elapsed_ms)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> ProviderGateway:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
