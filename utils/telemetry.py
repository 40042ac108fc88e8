"""
Metrics sinks for provider attempts and decision outcomes.
Emission is fire-and-forget: a failing sink is logged and never blocks the pipeline.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Any

from core.interfaces import IMetricsSink
from core.models import AttemptRecord, ConfidenceScore, Decision, Verdict
from utils.logger import log_structured

logger = logging.getLogger(__name__)


class LoggingMetricsSink(IMetricsSink):
    """Default sink: one structured log line per attempt/decision."""

    def __init__(self, name: str = "intake.metrics") -> None:
        self._log = logging.getLogger(name)

    def record_attempt(self, trace_id: str, record: AttemptRecord) -> None:
        log_structured(
            self._log,
            logging.INFO,
            "provider_attempt",
            trace_id=trace_id,
            provider=record.provider,
            attempt=record.attempt,
            outcome=record.outcome,
            elapsed_ms=round(record.elapsed_ms, 1),
            cost=record.cost,
            confidence=record.confidence,
        )

    def record_decision(self, trace_id: str, decision: Decision, score: ConfidenceScore) -> None:
        log_structured(
            self._log,
            logging.INFO,
            "decision",
            trace_id=trace_id,
            verdict=decision.verdict.value,
            priority=decision.priority.value if decision.priority else None,
            overall=round(score.overall, 4),
        )


class InMemoryMetricsSink(IMetricsSink):
    """Collects records in memory for tests and offline analysis."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.attempts: list[tuple[str, AttemptRecord]] = []
        self.decisions: list[tuple[str, Decision, ConfidenceScore]] = []

    def record_attempt(self, trace_id: str, record: AttemptRecord) -> None:
        with self._lock:
            self.attempts.append((trace_id, record))

    def record_decision(self, trace_id: str, decision: Decision, score: ConfidenceScore) -> None:
        with self._lock:
            self.decisions.append((trace_id, decision, score))

    def attempts_for(self, trace_id: str) -> list[AttemptRecord]:
        with self._lock:
            return [r for t, r in self.attempts if t == trace_id]

    def summary(self) -> dict[str, Any]:
        """Auto-approval rate, mean confidence, verdict counts, provider outcome counts, total cost."""
        with self._lock:
            decisions = list(self.decisions)
            attempts = [r for _, r in self.attempts]
        n = len(decisions)
        verdicts = Counter(d.verdict.value for _, d, _ in decisions)
        outcomes = Counter(f"{r.provider}:{r.outcome}" for r in attempts)
        return {
            "documents": n,
            "auto_approval_rate": round(verdicts.get(Verdict.AUTO_APPROVE.value, 0) / n, 4) if n else 0.0,
            "mean_confidence": round(sum(s.overall for _, _, s in decisions) / n, 4) if n else 0.0,
            "verdicts": dict(verdicts),
            "provider_outcomes": dict(outcomes),
            "recognition_cost": round(sum(r.cost for r in attempts), 6),
        }


def emit_attempt(sink: IMetricsSink | None, trace_id: str, record: AttemptRecord) -> None:
    if sink is None:
        return
    try:
        sink.record_attempt(trace_id, record)
    except Exception as e:
        logger.warning("Metrics sink failed on attempt record trace_id=%s: %s", trace_id, e)


def emit_decision(sink: IMetricsSink | None, trace_id: str, decision: Decision, score: ConfidenceScore) -> None:
    if sink is None:
        return
    try:
        sink.record_decision(trace_id, decision, score)
    except Exception as e:
        logger.warning("Metrics sink failed on decision record trace_id=%s: %s", trace_id, e)
