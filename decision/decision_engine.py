"""
Decision engine: pure function (score, violations, transaction value) -> verdict + priority.

Order is fixed:
1. Degraded or malformed extraction -> forced_review (nothing trustworthy to approve).
2. Generic gate: overall >= auto threshold and no critical violation -> auto_approve,
   otherwise review with priority high / medium / low.
3. High-value override: value > threshold and overall < high-value minimum -> forced_review.
   Evaluated last; it can only upgrade the verdict, never downgrade it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from core.models import ConfidenceScore, Decision, Priority, ValidationReport, Verdict
from utils.config import DecisionConfig

logger = logging.getLogger(__name__)

# Rules whose critical failure means the counterparty itself is in doubt
IDENTIFIER_RULES = frozenset({"identifier_checksum", "identity_number_format"})


@dataclass(frozen=True)
class DecisionPolicy:
    """Thresholds for the decision engine. Product policy; loaded from config."""

    auto_approve_threshold: float = 0.95
    review_medium_threshold: float = 0.85
    high_value_threshold: float = 100000.0
    high_value_min_confidence: float = 0.98

    @classmethod
    def from_config(cls, cfg: DecisionConfig) -> DecisionPolicy:
        return cls(
            auto_approve_threshold=cfg.auto_approve_threshold,
            review_medium_threshold=cfg.review_medium_threshold,
            high_value_threshold=cfg.high_value_threshold,
            high_value_min_confidence=cfg.high_value_min_confidence,
        )


def _higher(a: Priority, b: Priority) -> Priority:
    return a if a.rank <= b.rank else b


def decide(
    score: ConfidenceScore,
    report: ValidationReport,
    transaction_value: float = 0.0,
    policy: DecisionPolicy | None = None,
    *,
    degraded: bool = False,
) -> Decision:
    """Map a scored, validated document to a Decision. No side effects."""
    p = policy or DecisionPolicy()
    overall = score.overall
    critical = report.critical
    high_value = transaction_value > p.high_value_threshold

    if degraded:
        return Decision(
            verdict=Verdict.FORCED_REVIEW,
            priority=Priority.HIGH,
            reason="Degraded extraction: recognition or structured parsing failed; manual entry required",
        )

    # Generic confidence gate
    if overall >= p.auto_approve_threshold and not critical:
        decision = Decision(
            verdict=Verdict.AUTO_APPROVE,
            priority=None,
            reason=f"Confidence {overall:.2%} meets auto-approve threshold {p.auto_approve_threshold:.0%} with no critical issues",
        )
    else:
        reasons: list[str] = []
        if critical:
            reasons.append(f"{len(critical)} critical violation(s): " + "; ".join(v.message for v in critical[:3]))
        if overall < p.auto_approve_threshold:
            reasons.append(f"confidence {overall:.2%} below auto-approve threshold {p.auto_approve_threshold:.0%}")

        identifier_critical = any(v.rule_id in IDENTIFIER_RULES for v in critical)
        if overall < p.review_medium_threshold or identifier_critical:
            priority = Priority.HIGH
        elif overall < p.auto_approve_threshold or high_value or critical:
            priority = Priority.MEDIUM
        else:
            priority = Priority.LOW
        decision = Decision(verdict=Verdict.REVIEW, priority=priority, reason="Review: " + "; ".join(reasons))

    # High-value override (upgrade only)
    if high_value and overall < p.high_value_min_confidence:
        priority = _higher(decision.priority, Priority.MEDIUM) if decision.priority else Priority.MEDIUM
        reason = (
            f"Forced review: transaction value {transaction_value:,.2f} exceeds {p.high_value_threshold:,.2f} "
            f"and confidence {overall:.2%} is below {p.high_value_min_confidence:.0%}"
        )
        if decision.verdict is Verdict.REVIEW:
            reason += f" ({decision.reason})"
        decision = Decision(verdict=Verdict.FORCED_REVIEW, priority=priority, reason=reason)

    logger.debug(
        "Decision verdict=%s priority=%s overall=%.4f value=%.2f",
        decision.verdict.value,
        decision.priority.value if decision.priority else None,
        overall,
        transaction_value,
    )
    return decision


class DecisionEngine:
    """Holds a DecisionPolicy; thin object wrapper so the pipeline can inject policy once."""

    def __init__(self, policy: DecisionPolicy | None = None) -> None:
        self.policy = policy or DecisionPolicy()

    def decide(
        self,
        score: ConfidenceScore,
        report: ValidationReport,
        transaction_value: float = 0.0,
        *,
        degraded: bool = False,
    ) -> Decision:
        return decide(score, report, transaction_value, self.policy, degraded=degraded)
