"""Factory for creating providers from config. No hardcoded model names outside config defaults."""

from __future__ import annotations

from core.exceptions import ConfigError
from core.interfaces import ILLMProvider, IRecognitionProvider
from core.models import ProviderSpec
from providers.openai_provider import OllamaProvider, OpenAIProvider
from providers.tesseract_provider import TesseractProvider
from providers.vision_llm_provider import VisionLLMProvider
from utils.config import AppConfig, LLMConfig, ProviderConfig


def create_provider(
    provider: str,
    *,
    base_url: str | None = None,
    api_key: str = "",
    model: str = "",
    timeout_sec: float = 60.0,
) -> ILLMProvider:
    """Create an LLM provider by name (openai | ollama). Both speak OpenAI chat/completions."""
    name = (provider or "openai").strip().lower()
    if name == "openai":
        return OpenAIProvider(base_url=base_url, api_key=api_key, model=model or "gpt-4o-mini", timeout_sec=timeout_sec)
    if name == "ollama":
        return OllamaProvider(base_url=base_url, api_key=api_key, model=model or "llama3.2", timeout_sec=timeout_sec)
    raise ConfigError(f"Unknown LLM provider: {provider}. Use openai or ollama.")


def create_llm_provider(llm: LLMConfig) -> ILLMProvider:
    return create_provider(
        llm.provider,
        base_url=llm.base_url,
        api_key=llm.api_key,
        model=llm.model,
        timeout_sec=llm.timeout_sec,
    )


def _spec(pc: ProviderConfig) -> ProviderSpec:
    return ProviderSpec(
        name=pc.name,
        cost=pc.cost,
        declared_accuracy=pc.declared_accuracy,
        timeout_sec=pc.timeout_sec,
    )


def create_recognition_provider(pc: ProviderConfig, llm: LLMConfig) -> IRecognitionProvider:
    """One recognition provider; vision providers inherit endpoint/credentials from the LLM section."""
    kind = pc.kind.strip().lower()
    if kind == "tesseract":
        return TesseractProvider(_spec(pc), language=pc.language)
    if kind in ("vision_llm", "vision"):
        chat = create_provider(
            llm.provider,
            base_url=pc.base_url or llm.base_url,
            api_key=pc.api_key or llm.api_key,
            model=pc.model or llm.model,
            timeout_sec=pc.timeout_sec,
        )
        return VisionLLMProvider(chat, _spec(pc), max_tokens=llm.max_tokens)
    raise ConfigError(f"Unknown recognition provider kind: {pc.kind!r} (provider {pc.name})")


def create_recognition_providers(config: AppConfig) -> list[IRecognitionProvider]:
    """All configured recognition providers, in config order (the orchestrator sorts by cost)."""
    if not config.providers:
        raise ConfigError("No recognition providers configured")
    return [create_recognition_provider(pc, config.llm) for pc in config.providers]
