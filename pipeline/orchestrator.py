"""
Fallback orchestrator: tries recognition providers cheapest-first until one clears its tier threshold.

Never raises for provider failures. Total exhaustion yields a degraded result (best partial,
possibly None) so the document still flows through validation and scoring.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Sequence

from core.exceptions import (
    ProviderAuthError,
    ProviderCancelled,
    ProviderError,
    ProviderRejected,
    ProviderTimeout,
    ProviderUnavailable,
)
from core.interfaces import IMetricsSink, IRecognitionProvider
from core.models import AttemptRecord, OrchestrationResult, RawRecognition
from providers.gateway import CancelToken, ProviderGateway
from utils.config import OrchestratorConfig
from utils.retry import backoff_delay
from utils.telemetry import emit_attempt

logger = logging.getLogger(__name__)

# Exactly one retry for transient failures
MAX_ATTEMPTS_PER_PROVIDER = 2

_OUTCOMES: tuple[tuple[type[ProviderError], str], ...] = (
    (ProviderCancelled, "cancelled"),
    (ProviderTimeout, "timeout"),
    (ProviderAuthError, "auth"),
    (ProviderRejected, "rejected"),
    (ProviderUnavailable, "unavailable"),
)


def outcome_for(err: ProviderError) -> str:
    for cls, label in _OUTCOMES:
        if isinstance(err, cls):
            return label
    return "error"


class FallbackOrchestrator:
    """Cost-ordered provider chain with per-provider tier thresholds and one jittered retry."""

    def __init__(
        self,
        gateway: ProviderGateway,
        providers: Sequence[IRecognitionProvider],
        config: OrchestratorConfig | None = None,
        metrics: IMetricsSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.gateway = gateway
        # stable sort: equal-cost providers keep configured order
        self.providers = sorted(providers, key=lambda p: p.spec.cost)
        self.config = config or OrchestratorConfig()
        self.metrics = metrics
        self._rng = rng or random.Random()

    def tier_for(self, rank: int) -> float:
        """Threshold for the provider at this cost rank; the last tier repeats."""
        tiers = self.config.tier_thresholds or (0.8,)
        return tiers[min(rank, len(tiers) - 1)]

    def run(self, data: bytes, *, cancel: CancelToken | None = None, trace_id: str = "") -> OrchestrationResult:
        attempts: list[AttemptRecord] = []
        best: RawRecognition | None = None

        for rank, provider in enumerate(self.providers):
            if cancel is not None and cancel.cancelled:
                logger.info("Orchestration cancelled before %s trace_id=%s", provider.spec.name, trace_id)
                break
            tier = self.tier_for(rank)
            rec = self._call_with_retry(provider, data, tier, attempts, cancel, trace_id)
            if rec is None:
                continue
            if best is None or rec.native_confidence > best.native_confidence:
                best = rec
            if rec.native_confidence >= tier:
                logger.info(
                    "Provider %s accepted conf=%.3f tier=%.2f trace_id=%s",
                    rec.provider,
                    rec.native_confidence,
                    tier,
                    trace_id,
                )
                return OrchestrationResult(best=rec, degraded=False, threshold_met=True, attempts=attempts)
            logger.info(
                "Provider %s below tier conf=%.3f tier=%.2f; trying next trace_id=%s",
                rec.provider,
                rec.native_confidence,
                tier,
                trace_id,
            )

        degraded = best is None or not best.text.strip()
        if degraded:
            logger.warning(
                "All providers exhausted without usable text (%s attempts) trace_id=%s", len(attempts), trace_id
            )
        return OrchestrationResult(best=best, degraded=degraded, threshold_met=False, attempts=attempts)

    def _call_with_retry(
        self,
        provider: IRecognitionProvider,
        data: bytes,
        tier: float,
        attempts: list[AttemptRecord],
        cancel: CancelToken | None,
        trace_id: str,
    ) -> RawRecognition | None:
        spec = provider.spec
        for attempt in range(1, MAX_ATTEMPTS_PER_PROVIDER + 1):
            start = time.perf_counter()
            try:
                rec = self.gateway.recognize(provider, data, cancel=cancel, trace_id=trace_id)
            except ProviderError as e:
                record = AttemptRecord(
                    provider=spec.name,
                    attempt=attempt,
                    outcome=outcome_for(e),
                    elapsed_ms=(time.perf_counter() - start) * 1000.0,
                    cost=0.0 if isinstance(e, (ProviderRejected, ProviderAuthError, ProviderCancelled)) else spec.cost,
                    error=str(e),
                )
                self._record(attempts, record, trace_id)
                logger.warning("Provider %s attempt %s failed (%s): %s trace_id=%s", spec.name, attempt, record.outcome, e, trace_id)
                if isinstance(e, ProviderCancelled) or not e.retryable or attempt >= MAX_ATTEMPTS_PER_PROVIDER:
                    return None
                delay = backoff_delay(
                    attempt - 1, self.config.retry_backoff_sec, self.config.retry_jitter_sec, rng=self._rng
                )
                if cancel is not None:
                    if cancel.wait(delay):
                        return None
                else:
                    time.sleep(delay)
                continue

            record = AttemptRecord(
                provider=spec.name,
                attempt=attempt,
                outcome="ok" if rec.native_confidence >= tier else "below_threshold",
                elapsed_ms=rec.elapsed_ms,
                cost=rec.cost,
                confidence=rec.native_confidence,
            )
            self._record(attempts, record, trace_id)
            return rec
        return None

    def _record(self, attempts: list[AttemptRecord], record: AttemptRecord, trace_id: str) -> None:
        attempts.append(record)
        emit_attempt(self.metrics, trace_id, record)
