"""
Data models for the intake pipeline.
Uses dataclasses for DTOs; the Pydantic document schema (ExtractedDocument, etc.) is in core.schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    """Violation severity. Totally ordered: critical > warning > info."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class Verdict(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REVIEW = "review"
    FORCED_REVIEW = "forced_review"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


class ReviewStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def terminal(self) -> bool:
        return self in (ReviewStatus.APPROVED, ReviewStatus.REJECTED)


class CorrectionType(str, Enum):
    FORMAT = "format"
    VALUE = "value"
    MISSING = "missing"
    EXTRA = "extra"
    CLASSIFICATION = "classification"


class SessionState(str, Enum):
    IDLE = "idle"
    AWAITING_DOCUMENT = "awaiting_document"
    PROCESSING = "processing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class EventType(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    BUTTON = "button"


# ---------------------------------------------------------------------------
# Recognition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of one recognition provider."""

    name: str
    cost: float = 0.0
    declared_accuracy: float = 0.8
    timeout_sec: float = 30.0


@dataclass(frozen=True)
class RawRecognition:
    """Output of one provider attempt. Immutable once produced."""

    provider: str
    text: str
    native_confidence: float
    elapsed_ms: float = 0.0
    cost: float = 0.0


@dataclass(frozen=True)
class AttemptRecord:
    """Telemetry for a single provider call (success or failure)."""

    provider: str
    attempt: int
    outcome: str  # "ok" | "below_threshold" | "timeout" | "auth" | "rejected" | "unavailable" | "cancelled"
    elapsed_ms: float = 0.0
    cost: float = 0.0
    confidence: float | None = None
    error: str = ""


@dataclass
class OrchestrationResult:
    """Best recognition the fallback chain could produce."""

    best: RawRecognition | None
    degraded: bool = False
    threshold_met: bool = False
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.best.text if self.best else ""

    @property
    def total_cost(self) -> float:
        return round(sum(a.cost for a in self.attempts), 6)


# ---------------------------------------------------------------------------
# Validation / scoring / decision
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Violation:
    """One broken rule. Data, not an exception."""

    rule_id: str
    severity: Severity
    message: str
    field_refs: tuple[str, ...] = ()


@dataclass
class ValidationReport:
    """Result of running the rule battery. Empty violations => fully valid."""

    violations: list[Violation] = field(default_factory=list)
    checks: dict[str, bool] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.violations

    @property
    def critical(self) -> list[Violation]:
        return [v for v in self.violations if v.severity is Severity.CRITICAL]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity is Severity.WARNING]

    @property
    def has_critical(self) -> bool:
        return bool(self.critical)

    @property
    def worst_severity(self) -> Severity | None:
        if not self.violations:
            return None
        return max((v.severity for v in self.violations), key=lambda s: s.rank)

    def by_rule(self, rule_id: str) -> list[Violation]:
        return [v for v in self.violations if v.rule_id == rule_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "checks": dict(self.checks),
            "violations": [
                {
                    "rule_id": v.rule_id,
                    "severity": v.severity.value,
                    "message": v.message,
                    "field_refs": list(v.field_refs),
                }
                for v in self.violations
            ],
        }


@dataclass
class ConfidenceScore:
    """Single trust number for a document plus how it was built."""

    overall: float
    raw_average: float
    contributions: dict[str, float] = field(default_factory=dict)
    weights: dict[str, float] = field(default_factory=dict)
    capped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": round(self.overall, 4),
            "raw_average": round(self.raw_average, 4),
            "contributions": {k: round(v, 4) for k, v in self.contributions.items()},
            "weights": dict(self.weights),
            "capped": self.capped,
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of the decision engine."""

    verdict: Verdict
    priority: Priority | None = None
    reason: str = ""

    @property
    def needs_review(self) -> bool:
        return self.verdict is not Verdict.AUTO_APPROVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "priority": self.priority.value if self.priority else None,
            "reason": self.reason,
        }


# ---------------------------------------------------------------------------
# Review / corrections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Correction:
    """One human edit to one field of one review queue item."""

    item_id: str
    document_kind: str
    field_path: str
    original_value: str | None
    corrected_value: str | None
    correction_type: CorrectionType
    corrected_by: str = ""
    corrected_at: datetime | None = None
    notes: str = ""


@dataclass
class ReviewQueueItem:
    """Lifecycle wrapper around a document awaiting human judgment."""

    item_id: str
    document_id: str
    document_kind: str
    priority: Priority
    reason: str
    original_score: float
    status: ReviewStatus = ReviewStatus.PENDING
    verdict: Verdict = Verdict.REVIEW
    assignee: str | None = None
    corrections: list[Correction] = field(default_factory=list)
    resolved_confidence: float | None = None
    rejection_reason: str = ""
    caller_id: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    resolved_at: datetime | None = None


# ---------------------------------------------------------------------------
# Conversational session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InboundEvent:
    """One discrete message from the transport. payload holds media bytes for MEDIA events."""

    caller_id: str
    event_type: EventType
    text: str = ""
    payload: bytes = b""
    action: str = ""  # button id: approve | edit | reject
    message_id: str = ""
    media_type: str = ""
    received_at: datetime | None = None


@dataclass(frozen=True)
class OutboundReply:
    """Structured reply handed back to the transport (text plus optional buttons)."""

    caller_id: str
    text: str
    buttons: tuple[str, ...] = ()
    outcome: str = ""  # machine-readable tag, e.g. "rate_limited", "session_expired"


@dataclass
class Session:
    """Per-caller conversation state. version increments on every stored update."""

    caller_id: str
    state: SessionState = SessionState.IDLE
    last_activity: datetime | None = None
    pending_document_ref: str | None = None
    version: int = 0
    context: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pipeline output
# ---------------------------------------------------------------------------


@dataclass
class PipelineResult:
    """Final result of processing one document (single public output of the pipeline)."""

    trace_id: str
    document_id: str
    document: Any  # core.schema.ExtractedDocument
    report: ValidationReport
    score: ConfidenceScore
    decision: Decision
    orchestration: OrchestrationResult
    review_item_id: str | None = None
    elapsed_sec: float = 0.0

    @property
    def degraded(self) -> bool:
        return bool(self.orchestration.degraded or getattr(self.document, "degraded", False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "document_id": self.document_id,
            "degraded": self.degraded,
            "provider": self.orchestration.best.provider if self.orchestration.best else None,
            "recognition_cost": self.orchestration.total_cost,
            "document": self.document.model_dump(mode="json") if self.document is not None else None,
            "validation": self.report.to_dict(),
            "score": self.score.to_dict(),
            "decision": self.decision.to_dict(),
            "review_item_id": self.review_item_id,
            "elapsed_sec": round(self.elapsed_sec, 4),
        }
