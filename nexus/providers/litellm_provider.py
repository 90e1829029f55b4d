"""LiteLLM-backed provider adapters."""

from __future__ import annotations

import asyncio
import os
import time
from typing import Any, AsyncIterator

import litellm
import structlog
from litellm import acompletion

from nexus.config.schema import LangfuseConfig, ProviderConfig, ResilienceConfig
from nexus.errors import ProviderError
from nexus.logging import get_logger, mask_secret
from nexus.providers.base import (
    ChatRequest,
    CompletionRequest,
    CompletionResult,
    ProviderAdapter,
    ProviderName,
    StreamChunk,
)

logger = get_logger("nexus.providers.litellm")

# Caller-side mistakes: retrying the same request cannot succeed.
_NON_RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    litellm.AuthenticationError,
    litellm.PermissionDeniedError,
    litellm.BadRequestError,
    litellm.NotFoundError,
    litellm.UnprocessableEntityError,
)


class LiteLLMAdapter(ProviderAdapter):
    """
    Shared LiteLLM implementation of the adapter contract.

    Subclasses pin the backend (``name`` / ``litellm_prefix``) and may
    override :meth:`normalize_model`. Every failure leaves this class as a
    :class:`ProviderError` whose code is ``<provider>_error``.
    """

    name: ProviderName
    litellm_prefix: str

    def __init__(
        self,
        provider_config: ProviderConfig | None = None,
        *,
        resilience_config: ResilienceConfig | None = None,
        langfuse_config: LangfuseConfig | None = None,
        stream_max_tokens: int = 1024,
        complete_max_tokens: int = 400,
        complete_temperature: float = 0.2,
    ) -> None:
        cfg = provider_config or ProviderConfig()
        self.api_key = cfg.api_key or None
        self.api_base = cfg.api_base
        self.stream_max_tokens = max(1, stream_max_tokens)
        self.complete_max_tokens = max(1, complete_max_tokens)
        self.complete_temperature = complete_temperature
        self._langfuse_enabled = False

        # Resilience: timeout / retry / circuit-breaker
        self._resilience = resilience_config
        self._consecutive_failures: int = 0
        self._circuit_open_until: float = 0.0

        if self.api_key:
            logger.info("provider_initialized", provider=self.name.value, api_key=mask_secret(self.api_key))

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        litellm.drop_params = True

        if langfuse_config is not None:
            self._setup_langfuse(langfuse_config)

    def _setup_langfuse(self, config: LangfuseConfig) -> None:
        """Configure Langfuse callbacks if enabled and keys are available."""
        if not config.enabled:
            return

        public_key = config.public_key or os.environ.get("LANGFUSE_PUBLIC_KEY", "")
        secret_key = config.secret_key or os.environ.get("LANGFUSE_SECRET_KEY", "")
        host = config.host or os.environ.get("LANGFUSE_HOST", "")

        if not public_key or not secret_key:
            logger.warning("langfuse_missing_keys", hint="Set public_key and secret_key or LANGFUSE_PUBLIC_KEY/LANGFUSE_SECRET_KEY env vars")
            return

        # LiteLLM's built-in Langfuse integration reads these
        os.environ.setdefault("LANGFUSE_PUBLIC_KEY", public_key)
        os.environ.setdefault("LANGFUSE_SECRET_KEY", secret_key)
        if host:
            os.environ.setdefault("LANGFUSE_HOST", host)

        if "langfuse" not in litellm.success_callback:
            litellm.success_callback.append("langfuse")
        if "langfuse" not in litellm.failure_callback:
            litellm.failure_callback.append("langfuse")

        self._langfuse_enabled = True
        logger.info("langfuse_enabled", host=host or "(default)")

    def _build_langfuse_metadata(self) -> dict[str, Any] | None:
        """Build Langfuse trace metadata from the turn's structlog contextvars."""
        if not self._langfuse_enabled:
            return None

        ctx = structlog.contextvars.get_contextvars()
        if not ctx:
            return None

        metadata: dict[str, Any] = {}
        if ctx.get("user_id"):
            metadata["trace_user_id"] = ctx["user_id"]
        if ctx.get("project_id"):
            metadata["trace_session_id"] = ctx["project_id"]
        if ctx.get("turn_run_id"):
            metadata["trace_tags"] = [self.name.value, f"run:{ctx['turn_run_id']}"]

        return metadata if metadata else None

    def _resolve_model(self, model: str) -> str:
        """Normalize the alias, then apply the LiteLLM routing prefix."""
        model = self.normalize_model(model)
        if model.startswith(f"{self.litellm_prefix}/"):
            return model
        return f"{self.litellm_prefix}/{model}"

    def _build_kwargs(
        self,
        *,
        model: str,
        system: str,
        content: str,
        max_tokens: int,
        stream: bool,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": content})

        kwargs: dict[str, Any] = {
            "model": self._resolve_model(model),
            "messages": messages,
            "max_tokens": max_tokens,
        }
        if stream:
            kwargs["stream"] = True
        if temperature is not None:
            kwargs["temperature"] = temperature
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base

        rc = self._resilience
        if rc:
            kwargs["request_timeout"] = rc.timeout
            kwargs["num_retries"] = rc.max_retries

        langfuse_metadata = self._build_langfuse_metadata()
        if langfuse_metadata:
            kwargs["metadata"] = langfuse_metadata
        return kwargs

    @staticmethod
    def _value(obj: Any, key: str, default: Any = None) -> Any:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    @classmethod
    def _extract_delta_text(cls, delta: Any) -> str:
        content = cls._value(delta, "content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                text = cls._value(item, "text")
                if isinstance(text, str) and text:
                    parts.append(text)
            return "".join(parts)
        return ""

    @classmethod
    def _usage(cls, usage: Any) -> dict[str, int]:
        if usage is None:
            return {}
        return {
            "prompt_tokens": int(cls._value(usage, "prompt_tokens", 0) or 0),
            "completion_tokens": int(cls._value(usage, "completion_tokens", 0) or 0),
            "total_tokens": int(cls._value(usage, "total_tokens", 0) or 0),
        }

    def _normalize_error(self, exc: BaseException) -> ProviderError:
        """Translate a backend/transport failure into the shared taxonomy."""
        if isinstance(exc, ProviderError):
            return exc
        if isinstance(exc, asyncio.TimeoutError):
            return ProviderError(self.name.value, "Provider request timed out", retryable=True)
        message = str(exc) or f"{self.name.value} request failed"
        if self.api_key and self.api_key in message:
            message = message.replace(self.api_key, mask_secret(self.api_key))
        return ProviderError(
            self.name.value,
            message,
            retryable=not isinstance(exc, _NON_RETRYABLE_ERRORS),
        )

    def _check_circuit_breaker(self) -> str | None:
        """Return an error message if the circuit is open, else None."""
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return None
        if self._consecutive_failures < rc.circuit_breaker_threshold:
            return None
        now = time.monotonic()
        if now < self._circuit_open_until:
            return (
                f"Circuit breaker open: {self._consecutive_failures} consecutive failures. "
                f"Retry after {int(self._circuit_open_until - now)}s cooldown."
            )
        # Cooldown expired → half-open: allow one probe attempt
        return None

    def _record_result(self, success: bool) -> None:
        """Update circuit-breaker counters after a call."""
        rc = self._resilience
        if not rc or rc.circuit_breaker_threshold <= 0:
            return
        if success:
            self._consecutive_failures = 0
            self._circuit_open_until = 0.0
        else:
            self._consecutive_failures += 1
            if self._consecutive_failures >= rc.circuit_breaker_threshold:
                self._circuit_open_until = time.monotonic() + rc.circuit_breaker_cooldown
                logger.warning(
                    "circuit_breaker_opened",
                    provider=self.name.value,
                    failures=self._consecutive_failures,
                    cooldown=rc.circuit_breaker_cooldown,
                )

    def _guard_circuit(self) -> None:
        cb_error = self._check_circuit_breaker()
        if cb_error:
            raise ProviderError(self.name.value, cb_error, retryable=True)

    async def _await_bounded(self, coro: Any) -> Any:
        """Await *coro* under the resilience safety timeout, if configured."""
        rc = self._resilience
        if rc:
            return await asyncio.wait_for(coro, timeout=rc.timeout + 30)
        return await coro

    async def _next_chunk(self, iterator: Any) -> Any | None:
        """Pull one chunk under the idle timeout; None marks stream exhaustion."""
        rc = self._resilience
        try:
            if rc and rc.stream_idle_timeout > 0:
                return await asyncio.wait_for(iterator.__anext__(), timeout=rc.stream_idle_timeout)
            return await iterator.__anext__()
        except StopAsyncIteration:
            return None

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Stream text fragments for *request*.

        The generator is single-pass. Closing it early closes the upstream
        stream as well.
        """
        kwargs = self._build_kwargs(
            model=request.model,
            system=request.system,
            content=request.context,
            max_tokens=self.stream_max_tokens,
            stream=True,
        )
        self._guard_circuit()

        try:
            stream = await self._await_bounded(acompletion(**kwargs))
        except Exception as e:
            self._record_result(False)
            error = self._normalize_error(e)
            logger.error("llm_stream_failed", model=kwargs["model"], error=error.message, retryable=error.retryable)
            raise error from e

        iterator = stream.__aiter__()
        exhausted = False
        try:
            while True:
                try:
                    chunk = await self._next_chunk(iterator)
                except Exception as e:
                    self._record_result(False)
                    error = self._normalize_error(e)
                    logger.error("llm_stream_interrupted", model=kwargs["model"], error=error.message)
                    raise error from e
                if chunk is None:
                    exhausted = True
                    break

                request_id = self._value(chunk, "id") or None
                choices = self._value(chunk, "choices") or []
                if not choices:
                    continue
                delta = self._value(choices[0], "delta") or {}
                text = self._extract_delta_text(delta)
                if text:
                    yield StreamChunk(text=text, request_id=request_id)
            self._record_result(True)
        except (GeneratorExit, asyncio.CancelledError):
            logger.debug("llm_stream_closed_early", model=kwargs["model"])
            raise
        finally:
            if not exhausted:
                close = getattr(stream, "aclose", None)
                if callable(close):
                    await close()

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Non-streaming call returning the full text, request id and usage."""
        kwargs = self._build_kwargs(
            model=request.model,
            system=request.system,
            content=request.prompt,
            max_tokens=self.complete_max_tokens,
            stream=False,
            temperature=self.complete_temperature,
        )
        self._guard_circuit()

        try:
            response = await self._await_bounded(acompletion(**kwargs))
        except Exception as e:
            self._record_result(False)
            error = self._normalize_error(e)
            logger.error("llm_call_failed", model=kwargs["model"], error=error.message, retryable=error.retryable)
            raise error from e

        self._record_result(True)
        choices = self._value(response, "choices") or []
        message = self._value(choices[0], "message") if choices else None
        text = self._value(message, "content") if message is not None else None
        return CompletionResult(
            text=text if isinstance(text, str) else "",
            request_id=self._value(response, "id") or None,
            usage=self._usage(self._value(response, "usage")),
        )


class OpenAIAdapter(LiteLLMAdapter):
    name = ProviderName.OPENAI
    litellm_prefix = "openai"


class GeminiAdapter(LiteLLMAdapter):
    name = ProviderName.GEMINI
    litellm_prefix = "gemini"


# Exact aliases first, then prefix rules; order matters for the prefix table.
_ANTHROPIC_MODEL_ALIASES: dict[str, str] = {
    "claude-3-5-sonnet-latest": "claude-3-sonnet-20240229",
    "claude-3-5-haiku-latest": "claude-3-haiku-20240307",
    "claude-3-5-sonnet-20240620": "claude-3-sonnet-20240229",
    "claude-3-5-haiku-20240307": "claude-3-haiku-20240307",
}
_ANTHROPIC_MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("claude-3-5-sonnet", "claude-3-haiku-20240307"),
    ("claude-3-5-haiku", "claude-3-haiku-20240307"),
    ("claude-3-sonnet", "claude-3-haiku-20240307"),
    ("claude-3-opus", "claude-3-haiku-20240307"),
)


class AnthropicAdapter(LiteLLMAdapter):
    name = ProviderName.ANTHROPIC
    litellm_prefix = "anthropic"

    def normalize_model(self, model: str) -> str:
        bare = model.split("/", 1)[1] if model.startswith("anthropic/") else model
        if bare in _ANTHROPIC_MODEL_ALIASES:
            return _ANTHROPIC_MODEL_ALIASES[bare]
        for prefix, target in _ANTHROPIC_MODEL_PREFIXES:
            if bare.startswith(prefix):
                return target
        return model
