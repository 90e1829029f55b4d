"""Select exactly one provider adapter per request."""

from __future__ import annotations

from nexus.config.schema import Config
from nexus.errors import UnknownProviderError
from nexus.providers.base import ProviderAdapter, ProviderName
from nexus.providers.litellm_provider import AnthropicAdapter, GeminiAdapter, LiteLLMAdapter, OpenAIAdapter

_ADAPTER_CLASSES: dict[ProviderName, type[LiteLLMAdapter]] = {
    ProviderName.OPENAI: OpenAIAdapter,
    ProviderName.ANTHROPIC: AnthropicAdapter,
    ProviderName.GEMINI: GeminiAdapter,
}


class ProviderRegistry:
    """Holds one adapter per supported backend.

    Lookups by an unrecognized identifier fail with
    :class:`UnknownProviderError` before any network call is attempted.
    """

    def __init__(self, adapters: dict[ProviderName, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[ProviderName, ProviderAdapter] = dict(adapters or {})

    @classmethod
    def from_config(cls, config: Config) -> "ProviderRegistry":
        adapters: dict[ProviderName, ProviderAdapter] = {}
        for name, adapter_cls in _ADAPTER_CLASSES.items():
            adapters[name] = adapter_cls(
                getattr(config.providers, name.value),
                resilience_config=config.resilience,
                langfuse_config=config.observability.langfuse,
                stream_max_tokens=config.turn.stream_max_tokens,
                complete_max_tokens=config.turn.summary_max_tokens,
                complete_temperature=config.turn.summary_temperature,
            )
        return cls(adapters)

    @staticmethod
    def parse(provider: str | ProviderName) -> ProviderName:
        if isinstance(provider, ProviderName):
            return provider
        try:
            return ProviderName(provider)
        except ValueError:
            raise UnknownProviderError(f"Unsupported provider: {provider!r}") from None

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, provider: str | ProviderName) -> ProviderAdapter:
        name = self.parse(provider)
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownProviderError(f"Provider not configured: {name.value}")
        return adapter

    @property
    def names(self) -> list[str]:
        return [name.value for name in self._adapters]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
