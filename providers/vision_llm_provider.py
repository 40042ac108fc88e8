"""Recognition through a vision-capable chat model (OpenAI-compatible)."""

from __future__ import annotations

import logging

from core.interfaces import ILLMProvider
from core.models import ProviderSpec, RawRecognition
from prompts import load_prompt
from providers.base import BaseRecognitionProvider
from utils.image_utils import image_to_data_url, prepare_for_vision

logger = logging.getLogger(__name__)

UNREADABLE_MARKER = "UNREADABLE"
# Transcriptions shorter than this are unlikely to be a whole invoice or ID card
MIN_USEFUL_CHARS = 40


class VisionLLMProvider(BaseRecognitionProvider):
    """
    Sends the first page as a JPEG data URL with a transcription prompt.
    The model reports no confidence of its own, so native confidence is the declared
    accuracy, halved for near-empty transcriptions and zero for UNREADABLE.
    """

    def __init__(self, llm: ILLMProvider, spec: ProviderSpec | None = None, max_tokens: int = 4096) -> None:
        super().__init__(spec or ProviderSpec(name="vision_llm", cost=0.01, declared_accuracy=0.92, timeout_sec=60.0))
        self._llm = llm
        self._max_tokens = max_tokens

    def recognize(self, data: bytes, timeout: float) -> RawRecognition:
        image = prepare_for_vision(data)
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": load_prompt("vision_transcription.txt")},
                    {"type": "image_url", "image_url": {"url": image_to_data_url(image)}},
                ],
            }
        ]
        text = self._llm.chat_vision(messages, max_tokens=self._max_tokens, temperature=0.0, timeout=timeout).strip()
        return self._result(text, self._confidence_for(text))

    def _confidence_for(self, text: str) -> float:
        if not text or text.upper() == UNREADABLE_MARKER:
            return 0.0
        if len(text) < MIN_USEFUL_CHARS:
            return self.spec.declared_accuracy * 0.5
        return self.spec.declared_accuracy
