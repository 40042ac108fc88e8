"""
Correction capture and pattern learning.

CorrectionLog is an append-only record of accepted human edits keyed by (document_kind, field_path).
PatternLearner is read-only analytics over it: recurring (original -> corrected) pairs become
suggestions. Nothing here mutates an ExtractedDocument.
"""
from __future__ import annotations

import logging
import re
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

from core.models import Correction, CorrectionType

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_SUGGESTION = 0.95
LOW_CONFIDENCE_SUGGESTION = 0.70
# Leaf names whose edits re-categorize the document rather than fix a value
CLASSIFICATION_FIELDS = frozenset({"document_kind", "invoice_type", "item_kind", "id_type"})
_FORMAT_NOISE = re.compile(r"[\s\-_/.,₹]")


def _normalize(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _fuzzy_key(value: Any) -> str:
    return _normalize(value).lower()


def classify_correction(field_path: str, original: Any, corrected: Any) -> CorrectionType:
    """Infer correction type when the reviewer did not give one."""
    before, after = _normalize(original), _normalize(corrected)
    leaf = field_path.rsplit(".", 1)[-1]
    if leaf in CLASSIFICATION_FIELDS:
        return CorrectionType.CLASSIFICATION
    if not before and after:
        return CorrectionType.MISSING
    if before and not after:
        return CorrectionType.EXTRA
    if _FORMAT_NOISE.sub("", before).lower() == _FORMAT_NOISE.sub("", after).lower():
        return CorrectionType.FORMAT
    return CorrectionType.VALUE


@dataclass(frozen=True)
class CorrectionPattern:
    original: str
    corrected: str
    frequency: int
    correction_type: CorrectionType


@dataclass(frozen=True)
class Suggestion:
    field_path: str
    original: str
    suggested: str
    confidence: float
    frequency: int
    reason: str


class CorrectionLog:
    """Thread-safe append-only log of accepted corrections."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], list[Correction]] = defaultdict(list)
        self._count = 0

    def append(self, corrections: Iterable[Correction]) -> int:
        n = 0
        with self._lock:
            for c in corrections:
                self._entries[(c.document_kind, c.field_path)].append(c)
                n += 1
            self._count += n
        return n

    def for_field(self, document_kind: str, field_path: str) -> list[Correction]:
        with self._lock:
            return list(self._entries.get((document_kind, field_path), ()))

    def all(self) -> list[Correction]:
        with self._lock:
            return [c for entries in self._entries.values() for c in entries]

    def __len__(self) -> int:
        with self._lock:
            return self._count


class PatternLearner:
    """Aggregates the log into (original, corrected) patterns and value suggestions."""

    def __init__(self, log: CorrectionLog, min_occurrences: int = 3) -> None:
        self.log = log
        self.min_occurrences = max(1, min_occurrences)

    def patterns(self, document_kind: str, field_path: str) -> list[CorrectionPattern]:
        """Distinct (original, corrected) pairs for one field, most frequent first."""
        counts: Counter[tuple[str, str]] = Counter()
        types: dict[tuple[str, str], CorrectionType] = {}
        for c in self.log.for_field(document_kind, field_path):
            key = (_normalize(c.original_value), _normalize(c.corrected_value))
            counts[key] += 1
            types.setdefault(key, c.correction_type)
        return [
            CorrectionPattern(original=o, corrected=n, frequency=f, correction_type=types[(o, n)])
            for (o, n), f in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

    def suggest(self, document_kind: str, field_path: str, value: Any) -> Suggestion | None:
        """
        Exact original seen at least min_occurrences times -> high-confidence suggestion.
        Otherwise any prior case-insensitive/trimmed match -> low-confidence suggestion.
        """
        patterns = self.patterns(document_kind, field_path)
        if not patterns:
            return None
        exact = _normalize(value)
        for p in patterns:
            if p.original == exact and p.frequency >= self.min_occurrences:
                return Suggestion(
                    field_path=field_path,
                    original=exact,
                    suggested=p.corrected,
                    confidence=HIGH_CONFIDENCE_SUGGESTION,
                    frequency=p.frequency,
                    reason=f"This value has been corrected {p.frequency} times before",
                )
        fuzzy = _fuzzy_key(value)
        for p in patterns:
            if _fuzzy_key(p.original) == fuzzy:
                return Suggestion(
                    field_path=field_path,
                    original=exact,
                    suggested=p.corrected,
                    confidence=LOW_CONFIDENCE_SUGGESTION,
                    frequency=p.frequency,
                    reason=f"Similar value corrected {p.frequency} time(s)",
                )
        return None

    def insights(self, top_n: int = 10) -> dict[str, Any]:
        """Total corrections, most-corrected fields, correction-type distribution."""
        entries = self.log.all()
        fields = Counter(f"{c.document_kind}:{c.field_path}" for c in entries)
        kinds = Counter(c.correction_type.value for c in entries)
        return {
            "total_corrections": len(entries),
            "most_problematic_fields": [{"field": f, "error_count": n} for f, n in fields.most_common(top_n)],
            "correction_type_distribution": dict(kinds),
        }
