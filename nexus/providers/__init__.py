"""Model backend adapters."""

from nexus.providers.base import (
    ChatRequest,
    CompletionRequest,
    CompletionResult,
    ProviderAdapter,
    ProviderName,
    StreamChunk,
)
from nexus.providers.registry import ProviderRegistry

__all__ = [
    "ChatRequest",
    "CompletionRequest",
    "CompletionResult",
    "ProviderAdapter",
    "ProviderName",
    "ProviderRegistry",
    "StreamChunk",
]
