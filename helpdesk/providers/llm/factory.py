from __future__ import annotations

from helpdesk.core.config import get_settings
from helpdesk.providers.llm.base import LLMProvider
from helpdesk.providers.llm.fake import FakeLLMProvider
from helpdesk.providers.llm.openai import OpenAIProvider


_providers: dict[str, LLMProvider] = {}


def _build(kind: str) -> LLMProvider:
    settings = get_settings()
    if (settings.llm_provider or "openai").lower() == "fake":
        return FakeLLMProvider()
    if kind == "reasoning":
        return OpenAIProvider(
            api_key=settings.reasoning_api_key,
            base_url=settings.reasoning_base_url or settings.openai_base_url,
            integration="llm.reasoning",
        )
    return OpenAIProvider(api_key=settings.openai_api_key, base_url=settings.openai_base_url)


def get_llm_provider() -> LLMProvider:
    if "primary" not in _providers:
        _providers["primary"] = _build("primary")
    return _providers["primary"]


def get_reasoning_provider() -> LLMProvider:
    if "reasoning" not in _providers:
        _providers["reasoning"] = _build("reasoning")
    return _providers["reasoning"]


def set_llm_provider(provider: LLMProvider, *, reasoning: LLMProvider | None = None) -> None:
    # Swap providers in tests or embedded runners.
    _providers["primary"] = provider
    _providers["reasoning"] = reasoning or provider


def reset_llm_providers() -> None:
    _providers.clear()
