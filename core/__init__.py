"""Core layer: interfaces, models, schemas, exceptions."""

from core.interfaces import (
    ILLMProvider,
    IMetricsSink,
    IRecognitionProvider,
    IReviewStore,
    ISessionStore,
    ITransport,
)
from core.models import (
    AttemptRecord,
    ConfidenceScore,
    Correction,
    CorrectionType,
    Decision,
    EventType,
    InboundEvent,
    OrchestrationResult,
    OutboundReply,
    PipelineResult,
    Priority,
    ProviderSpec,
    RawRecognition,
    ReviewQueueItem,
    ReviewStatus,
    Session,
    SessionState,
    Severity,
    ValidationReport,
    Verdict,
    Violation,
)
from core.schema import ExtractedDocument
from core.exceptions import (
    IntakeError,
    ConfigError,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    ProviderAuthError,
    ProviderRejected,
    ProviderCancelled,
    MalformedExtraction,
    ReviewQueueError,
    InvalidTransition,
    ItemNotFound,
    SessionExpired,
    RateLimitExceeded,
)

__all__ = [
    "ILLMProvider",
    "IMetricsSink",
    "IRecognitionProvider",
    "IReviewStore",
    "ISessionStore",
    "ITransport",
    "AttemptRecord",
    "ConfidenceScore",
    "Correction",
    "CorrectionType",
    "Decision",
    "EventType",
    "InboundEvent",
    "OrchestrationResult",
    "OutboundReply",
    "PipelineResult",
    "Priority",
    "ProviderSpec",
    "RawRecognition",
    "ReviewQueueItem",
    "ReviewStatus",
    "Session",
    "SessionState",
    "Severity",
    "ValidationReport",
    "Verdict",
    "Violation",
    "ExtractedDocument",
    "IntakeError",
    "ConfigError",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "ProviderAuthError",
    "ProviderRejected",
    "ProviderCancelled",
    "MalformedExtraction",
    "ReviewQueueError",
    "InvalidTransition",
    "ItemNotFound",
    "SessionExpired",
    "RateLimitExceeded",
]
