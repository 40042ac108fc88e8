"""Review layer: queue lifecycle, persistence collaborator, correction learning."""

from review.corrections import (
    CorrectionLog,
    CorrectionPattern,
    PatternLearner,
    Suggestion,
    classify_correction,
)
from review.queue import ALLOWED_TRANSITIONS, ReviewQueue, corrected_document_id
from review.store import InMemoryReviewStore

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CorrectionLog",
    "CorrectionPattern",
    "InMemoryReviewStore",
    "PatternLearner",
    "ReviewQueue",
    "Suggestion",
    "classify_correction",
    "corrected_document_id",
]
