"""Capability providers: abstract bases, concrete recognition/LLM providers, gateway, factory."""

from providers.base import BaseLLMProvider, BaseRecognitionProvider
from providers.openai_provider import OpenAIProvider, OllamaProvider
from providers.tesseract_provider import TesseractProvider
from providers.vision_llm_provider import VisionLLMProvider
from providers.gateway import CancelToken, ProviderGateway
from providers.factory import create_provider, create_llm_provider, create_recognition_providers

__all__ = [
    "BaseLLMProvider",
    "BaseRecognitionProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "TesseractProvider",
    "VisionLLMProvider",
    "CancelToken",
    "ProviderGateway",
    "create_provider",
    "create_llm_provider",
    "create_recognition_providers",
]
