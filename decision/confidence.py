"""
Confidence scorer: weighted average of per-field extraction confidences, grouped by field group,
then penalized by validator outcomes.

    overall = sum(w_g * c_g) / sum(w_g)   over applicable groups g
    c_g     = mean confidence of the group's applicable fields
              (fields referenced by a critical/warning violation are capped first)
    overall = min(overall, critical_cap) if any critical violation

Always clamped to [0, 1].
"""
from __future__ import annotations

import logging
from typing import Iterator

from core.exceptions import ConfigError
from core.models import ConfidenceScore, Severity, ValidationReport
from core.schema import ExtractedDocument
from utils.config import ScoringConfig, validate_weight_table

logger = logging.getLogger(__name__)

INVOICE_GROUPS: dict[str, tuple[str, ...]] = {
    "identifiers": ("vendor_gstin", "customer_gstin"),
    "line_items": ("line_items",),
    "tax_calculations": ("tax_calculations",),
    "grand_total": ("grand_total",),
    "header": ("invoice_number", "invoice_date", "hsn_codes"),
}
IDENTITY_GROUPS: dict[str, tuple[str, ...]] = {
    "identifiers": ("id_number",),
    "holder_name": ("holder_name",),
    "date_of_birth": ("date_of_birth",),
    "header": ("father_name", "address"),
}
FIELD_GROUPS: dict[str, dict[str, tuple[str, ...]]] = {
    "invoice": INVOICE_GROUPS,
    "identity": IDENTITY_GROUPS,
}
# Groups below this get called out by suggest_improvements
LOW_GROUP_CONFIDENCE = 0.85


class WeightTable:
    """Immutable group -> weight mapping; construction fails unless weights sum to 1.0."""

    def __init__(self, weights: dict[str, float], groups: dict[str, tuple[str, ...]], name: str = "weights") -> None:
        validate_weight_table(weights, name)
        if set(weights) != set(groups):
            raise ConfigError(f"{name}: weight keys {sorted(weights)} do not match field groups {sorted(groups)}")
        self._weights = dict(weights)
        self.groups = dict(groups)
        self.name = name

    def __getitem__(self, group: str) -> float:
        return self._weights[group]

    def __iter__(self) -> Iterator[str]:
        return iter(self._weights)

    def as_dict(self) -> dict[str, float]:
        return dict(self._weights)


def _applicable_fields(doc: ExtractedDocument, fields: tuple[str, ...]) -> list[str]:
    """Drop optional fields the document legitimately lacks."""
    out: list[str] = []
    for name in fields:
        if name == "customer_gstin" and not doc.customer.gstin:
            continue
        if doc.document_kind == "identity" and name in ("father_name", "address"):
            ident = doc.identity
            if ident is None or not getattr(ident, name):
                continue
        out.append(name)
    return out


def penalized_fields(report: ValidationReport) -> set[str]:
    """Fields referenced by any critical or warning violation."""
    return {
        ref
        for v in report.violations
        if v.severity.rank >= Severity.WARNING.rank
        for ref in v.field_refs
    }


class ConfidenceScorer:
    """Combines field confidences and validator outcomes into one score in [0, 1]."""

    def __init__(self, config: ScoringConfig | None = None) -> None:
        self.config = config or ScoringConfig()
        self.tables: dict[str, WeightTable] = {
            "invoice": WeightTable(self.config.invoice_weights, INVOICE_GROUPS, "invoice_weights"),
            "identity": WeightTable(self.config.identity_weights, IDENTITY_GROUPS, "identity_weights"),
        }

    def field_confidences(self, doc: ExtractedDocument, report: ValidationReport) -> dict[str, float]:
        """Per-field confidence after the violation cap."""
        capped = penalized_fields(report)
        cap = self.config.violation_field_cap
        out: dict[str, float] = {}
        for name in doc.confidence_fields:
            c = doc.confidence(name)
            out[name] = min(c, cap) if name in capped else c
        return out

    def score(self, doc: ExtractedDocument, report: ValidationReport) -> ConfidenceScore:
        table = self.tables[doc.document_kind]
        confidences = self.field_confidences(doc, report)

        group_conf: dict[str, float] = {}
        for group, fields in table.groups.items():
            applicable = _applicable_fields(doc, fields)
            if applicable:
                group_conf[group] = sum(confidences[f] for f in applicable) / len(applicable)

        total_weight = sum(table[g] for g in group_conf)
        if total_weight <= 0:
            return ConfidenceScore(overall=0.0, raw_average=0.0, contributions={}, weights={}, capped=False)

        weights = {g: table[g] / total_weight for g in group_conf}
        contributions = {g: weights[g] * c for g, c in group_conf.items()}
        raw = max(0.0, min(1.0, sum(contributions.values())))

        overall = raw
        capped = False
        if report.has_critical and overall > self.config.critical_cap:
            overall = self.config.critical_cap
            capped = True
        overall = max(0.0, min(1.0, overall))

        logger.debug(
            "Confidence kind=%s raw=%.4f overall=%.4f capped=%s groups=%s",
            doc.document_kind,
            raw,
            overall,
            capped,
            {g: round(c, 3) for g, c in group_conf.items()},
        )
        return ConfidenceScore(overall=overall, raw_average=raw, contributions=contributions, weights=weights, capped=capped)


def group_confidences(score: ConfidenceScore) -> dict[str, float]:
    """Recover each group's mean confidence from its weighted contribution."""
    return {g: (score.contributions[g] / w if w else 0.0) for g, w in score.weights.items() if g in score.contributions}


def suggest_improvements(score: ConfidenceScore, report: ValidationReport) -> list[str]:
    """Reviewer hints: critical violations first, then weak field groups, then warnings."""
    tips: list[str] = [f"Fix: {v.message}" for v in report.critical]
    for group, conf in sorted(group_confidences(score).items(), key=lambda kv: kv[1]):
        if conf < LOW_GROUP_CONFIDENCE:
            tips.append(f"Re-check {group.replace('_', ' ')} (confidence {conf:.0%})")
    tips.extend(f"Verify: {v.message}" for v in report.warnings)
    if score.capped:
        tips.append("Score capped because a hard rule is broken; resolve critical issues before approval")
    return tips


def confidence_summary(score: ConfidenceScore, report: ValidationReport) -> str:
    """One-line human summary of the score and the validation outcome."""
    parts = [f"Overall {score.overall:.1%}"]
    if score.capped:
        parts[0] += f" (capped from {score.raw_average:.1%})"
    n_crit, n_warn = len(report.critical), len(report.warnings)
    if n_crit or n_warn:
        parts.append(f"{n_crit} critical, {n_warn} warning(s)")
    else:
        parts.append("no blocking issues")
    groups = group_confidences(score)
    if groups:
        weakest, conf = min(groups.items(), key=lambda kv: kv[1])
        parts.append(f"weakest: {weakest.replace('_', ' ')} {conf:.0%}")
    return "; ".join(parts)
