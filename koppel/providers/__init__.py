"""
Provider abstractions.

This package exposes the provider contract, the normalized response types and
one adapter per supported vendor backend.
"""

from .base import (
    BaseProviderAdapter,
    ContextCacher,
    DeltaAccumulator,
    IteratorStream,
    Provider,
    ProviderRegistry,
    Response,
    StreamResponse,
    supports_context_cache,
)
from .anthropic_adapter import AnthropicProvider
from .gemini_adapter import GeminiProvider
from .openai_adapter import OpenAIProvider

__all__ = [
    "BaseProviderAdapter",
    "ContextCacher",
    "DeltaAccumulator",
    "IteratorStream",
    "Provider",
    "ProviderRegistry",
    "Response",
    "StreamResponse",
    "supports_context_cache",
    "AnthropicProvider",
    "GeminiProvider",
    "OpenAIProvider",
]
