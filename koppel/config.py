"""Environment-driven provider settings and the default provider registry."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .providers import (
    AnthropicProvider,
    GeminiProvider,
    OpenAIProvider,
    Provider,
    ProviderRegistry,
)
from .providers.openai_adapter import DEFAULT_BASE_URL, DEFAULT_ENDPOINT

DEFAULT_MAX_TOKENS = 4096


@dataclass(slots=True)
class ProviderSettings:
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: str = DEFAULT_BASE_URL
    openai_endpoint: str = DEFAULT_ENDPOINT
    openai_timeout: Optional[float] = None
    gemini_api_key: Optional[str] = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    thinking_budget: Optional[int] = None
    log_level: str = "warning"
    log_json: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProviderSettings":
        env = os.environ if environ is None else environ
        return cls(
            anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_base_url=env.get("OPENAI_BASE_URL") or DEFAULT_BASE_URL,
            openai_endpoint=env.get("OPENAI_ENDPOINT") or DEFAULT_ENDPOINT,
            openai_timeout=_float(env, "OPENAI_TIMEOUT"),
            gemini_api_key=env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY") or None,
            max_tokens=_int(env, "KOPPEL_MAX_TOKENS") or DEFAULT_MAX_TOKENS,
            thinking_budget=_int(env, "KOPPEL_THINKING_BUDGET"),
            log_level=env.get("KOPPEL_LOG_LEVEL") or "warning",
            log_json=(env.get("KOPPEL_LOG_JSON") or "").lower() in {"1", "true", "yes"},
        )


def _float(env: Mapping[str, str], name: str) -> Optional[float]:
    raw = env.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = env.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("anthropic", AnthropicProvider.from_settings)
    registry.register("openai", OpenAIProvider.from_settings)
    registry.register("gemini", GeminiProvider.from_settings)
    return registry


def create_provider(provider_id: str, settings: Optional[ProviderSettings] = None) -> Provider:
    return default_registry().create(provider_id, settings or ProviderSettings.from_env())
