"""Provider-neutral adapter contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator


class ProviderName(str, Enum):
    """Closed set of supported model backends."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


@dataclass(frozen=True)
class ChatRequest:
    """Input for one streamed model call.

    ``context`` is the fully assembled prompt; it is sent as the single user
    message. ``user_text`` is carried for adapters that want the raw message.
    """

    model: str
    context: str
    user_text: str = ""
    system: str = ""


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    prompt: str
    system: str = ""


@dataclass(frozen=True)
class StreamChunk:
    """One text fragment plus the upstream request id, when the backend reports one."""

    text: str
    request_id: str | None = None


@dataclass
class CompletionResult:
    text: str
    request_id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Uniform interface over one model backend.

    ``stream_chat`` returns a lazy, single-pass async iterator; closing it
    (``aclose``) cancels the underlying network call. Both operations raise
    :class:`nexus.errors.ProviderError` on any backend failure.
    """

    name: ProviderName

    @abstractmethod
    def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        ...

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        ...

    def normalize_model(self, model: str) -> str:
        """Map a requested model alias to the concrete model sent upstream."""
        return model

    async def aclose(self) -> None:
        """Release any client resources held by the adapter."""
        return None
