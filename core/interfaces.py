"""
Abstract interfaces for the document intake pipeline.
Every external collaborator is behind an interface; no stage depends on a concrete OCR/LLM vendor,
store or transport.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any

from core.models import (
    AttemptRecord,
    ConfidenceScore,
    Correction,
    Decision,
    OutboundReply,
    ProviderSpec,
    RawRecognition,
    ReviewQueueItem,
    Session,
)


class IRecognitionProvider(ABC):
    """Opaque recognition capability: document bytes -> text + native confidence."""

    @property
    @abstractmethod
    def spec(self) -> ProviderSpec:
        """Static {name, cost, declared_accuracy, timeout_sec}."""
        ...

    @abstractmethod
    def recognize(self, data: bytes, timeout: float) -> RawRecognition:
        """
        Recognize text in one document. May raise requests exceptions or ProviderError;
        the gateway classifies both.
        """
        ...


class ILLMProvider(ABC):
    """Abstract LLM provider: text/chat and optional vision. Used by the extractor and vision OCR."""

    @abstractmethod
    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Chat completion; returns content string."""
        ...

    def chat_vision(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Vision-capable chat. Default: delegate to chat."""
        return self.chat(messages, **kwargs)


class IReviewStore(ABC):
    """Persistence collaborator for review items, corrections and corrected document views."""

    @abstractmethod
    def add(self, item: ReviewQueueItem) -> None:
        ...

    @abstractmethod
    def get(self, item_id: str) -> ReviewQueueItem | None:
        ...

    @abstractmethod
    def update(self, item: ReviewQueueItem) -> None:
        ...

    @abstractmethod
    def list_items(self) -> list[ReviewQueueItem]:
        ...

    @abstractmethod
    def save_corrections(self, corrections: list[Correction]) -> None:
        ...

    @abstractmethod
    def save_document(self, document_id: str, document: Any) -> None:
        ...

    @abstractmethod
    def get_document(self, document_id: str) -> Any | None:
        ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """
        All writes inside the block commit together or not at all. Blocks run one at a time,
        so a read-check-write inside one is not interleaved with another.
        """
        ...


class ISessionStore(ABC):
    """Keyed session table with compare-and-set updates."""

    @abstractmethod
    def get(self, caller_id: str) -> Session | None:
        ...

    @abstractmethod
    def compare_and_set(self, caller_id: str, expected_version: int, session: Session) -> bool:
        """Store session only if the stored version equals expected_version (0 = absent)."""
        ...

    @abstractmethod
    def delete(self, caller_id: str) -> None:
        ...


class IMetricsSink(ABC):
    """Fire-and-forget telemetry collaborator."""

    @abstractmethod
    def record_attempt(self, trace_id: str, record: AttemptRecord) -> None:
        ...

    @abstractmethod
    def record_decision(self, trace_id: str, decision: Decision, score: ConfidenceScore) -> None:
        ...


class ITransport(ABC):
    """Outbound side of the messaging transport."""

    @abstractmethod
    def send(self, reply: OutboundReply) -> None:
        ...
