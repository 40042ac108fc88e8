"""
Abstract bases for capability providers.
The pipeline depends only on these interfaces; no concrete provider imports in pipeline stages.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from core.interfaces import ILLMProvider, IRecognitionProvider
from core.models import ProviderSpec, RawRecognition


class BaseLLMProvider(ILLMProvider, ABC):
    """Abstract LLM provider. Implement chat(); chat_vision() defaults to it."""

    model: str = ""

    @abstractmethod
    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Chat completion. Returns content string."""
        ...

    def chat_vision(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """Vision-capable chat. Default: delegate to chat (OpenAI-compatible APIs support it)."""
        return self.chat(messages, **kwargs)


class BaseRecognitionProvider(IRecognitionProvider, ABC):
    """Recognition provider described by a static ProviderSpec."""

    def __init__(self, spec: ProviderSpec) -> None:
        self._spec = spec

    @property
    def spec(self) -> ProviderSpec:
        return self._spec

    @property
    def name(self) -> str:
        return self._spec.name

    @abstractmethod
    def recognize(self, data: bytes, timeout: float) -> RawRecognition:
        ...

    def _result(self, text: str, native_confidence: float) -> RawRecognition:
        """RawRecognition stamped with this provider's name and cost; the gateway adds timing."""
        return RawRecognition(
            provider=self._spec.name,
            text=text,
            native_confidence=native_confidence,
            cost=self._spec.cost,
        )
