"""Decision layer: identifier checks, domain validator, confidence scorer, decision engine."""

from decision.gstin import is_valid_aadhaar, is_valid_gstin, is_valid_pan, gstin_problems
from decision.validator import DomainValidator, validate_document
from decision.confidence import ConfidenceScorer, WeightTable, confidence_summary, suggest_improvements
from decision.decision_engine import DecisionEngine, DecisionPolicy, decide

__all__ = [
    "is_valid_aadhaar",
    "is_valid_gstin",
    "is_valid_pan",
    "gstin_problems",
    "DomainValidator",
    "validate_document",
    "ConfidenceScorer",
    "WeightTable",
    "confidence_summary",
    "suggest_improvements",
    "DecisionEngine",
    "DecisionPolicy",
    "decide",
]
