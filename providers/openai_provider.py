"""OpenAI (and Azure/OpenAI-compatible) HTTP provider."""

from __future__ import annotations

import logging
from typing import Any

import requests

from providers.base import BaseLLMProvider
from providers.errors import classify_exception

logger = logging.getLogger(__name__)
DEFAULT_OPENAI_BASE = "https://api.openai.com/v1"


class OpenAIProvider(BaseLLMProvider):
    """OpenAI API and OpenAI-compatible endpoints (Azure, vLLM, etc.)."""

    name = "openai"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        timeout_sec: float = 60.0,
    ) -> None:
        self._base_url = (base_url or DEFAULT_OPENAI_BASE).rstrip("/")
        self._api_key = api_key or ""
        self.model = model
        self._timeout = timeout_sec

    def _headers(self) -> dict[str, str]:
        h: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            h["Authorization"] = f"Bearer {self._api_key}"
        return h

    def _payload(self, messages: list[dict[str, Any]], **kwargs: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": kwargs.get("model") or self.model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", 4096),
            "stream": False,
        }
        for key in ("temperature", "top_p", "response_format"):
            if kwargs.get(key) is not None:
                payload[key] = kwargs[key]
        return payload

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        """
        POST /chat/completions. Transport failures are raised as ProviderError subclasses
        (timeout, auth, rejected, unavailable).
        """
        url = f"{self._base_url}/chat/completions"
        timeout = kwargs.get("timeout") or self._timeout
        try:
            resp = requests.post(url, json=self._payload(messages, **kwargs), headers=self._headers(), timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise classify_exception(e, self.name) from e
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug("LLM %s returned %s chars", data.get("model") or self.model, len(content))
        return content.strip()


class OllamaProvider(OpenAIProvider):
    """Ollama local server; same HTTP contract as OpenAI chat/completions."""

    name = "ollama"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str = "",
        model: str = "llama3.2",
        timeout_sec: float = 120.0,
    ) -> None:
        super().__init__(base_url=base_url or "http://localhost:11434/v1", api_key=api_key, model=model, timeout_sec=timeout_sec)

