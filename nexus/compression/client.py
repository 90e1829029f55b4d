"""Client for the pinned-context compression service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from nexus.config.schema import CompressionConfig
from nexus.logging import get_logger

logger = get_logger(__name__)

_FAILURE_REASONS = {
    400: "invalid_request",
    401: "authentication_failed",
    429: "rate_limited",
}


@dataclass(frozen=True)
class CompressionPolicy:
    """Fixed server-side compression settings recorded alongside each turn."""

    aggressiveness: float
    max_output_tokens: int
    min_output_tokens: int


@dataclass(frozen=True)
class CompressionResult:
    output: str
    output_tokens: int
    original_input_tokens: int
    compression_time: float

    @property
    def ratio(self) -> float | None:
        if self.original_input_tokens > 0:
            return self.output_tokens / self.original_input_tokens
        return None


class CompressionClient:
    """
    Shrinks a block of text under the configured token budget.

    ``compress`` never raises: a missing key, a transport failure, a timeout,
    a non-2xx status, or an empty body all return ``None`` so the caller can
    fall back to the uncompressed text.
    """

    def __init__(
        self,
        config: CompressionConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def policy(self) -> CompressionPolicy:
        return CompressionPolicy(
            aggressiveness=self.config.aggressiveness,
            max_output_tokens=self.config.max_output_tokens,
            min_output_tokens=self.config.min_output_tokens,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self._client

    def _payload(self, text: str) -> dict[str, Any]:
        policy = self.policy
        return {
            "model": self.config.model,
            "compression_settings": {
                "aggressiveness": policy.aggressiveness,
                "max_output_tokens": policy.max_output_tokens,
                "min_output_tokens": policy.min_output_tokens,
            },
            "input": text,
        }

    async def compress(self, text: str) -> CompressionResult | None:
        if not self.enabled or not text.strip():
            return None

        try:
            response = await self._get_client().post(
                "/v1/compress",
                json=self._payload(text),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
        except httpx.TimeoutException:
            logger.warning("compression_failed", reason="timeout", timeout=self.config.timeout)
            return None
        except httpx.HTTPError as e:
            logger.warning("compression_failed", reason="transport", error_type=type(e).__name__, error=str(e))
            return None

        if response.is_error:
            logger.warning(
                "compression_failed",
                reason=_FAILURE_REASONS.get(response.status_code, "api_error"),
                status=response.status_code,
                retry_after=response.headers.get("Retry-After"),
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("compression_failed", reason="invalid_json", status=response.status_code)
            return None

        output = data.get("output") if isinstance(data, dict) else None
        if not isinstance(output, str) or not output:
            logger.warning("compression_failed", reason="empty_output")
            return None

        result = CompressionResult(
            output=output,
            output_tokens=int(data.get("output_tokens") or 0),
            original_input_tokens=int(data.get("original_input_tokens") or 0),
            compression_time=float(data.get("compression_time") or 0),
        )
        logger.debug(
            "compression_succeeded",
            input_tokens=result.original_input_tokens,
            output_tokens=result.output_tokens,
        )
        return result

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
