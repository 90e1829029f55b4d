"""Long-term memory store (Zep-compatible HTTP API)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal, TypedDict

import httpx

from nexus.config.schema import MemoryConfig
from nexus.errors import NexusError
from nexus.logging import get_logger

logger = get_logger(__name__)


class MemoryMessage(TypedDict):
    role: Literal["user", "assistant"]
    content: str


class MemoryStoreError(NexusError):
    """A read or write against the long-term memory service failed."""

    code = "memory_error"
    status = 502


class LongTermMemoryStore(ABC):
    """Context retrieval and message recording, addressed per project session."""

    @abstractmethod
    async def get_context(self, session_id: str, user_id: str) -> str:
        ...

    @abstractmethod
    async def add_messages(self, session_id: str, user_id: str, messages: list[MemoryMessage]) -> None:
        ...

    async def aclose(self) -> None:
        return None


class NullMemoryStore(LongTermMemoryStore):
    """Used when no memory service is configured."""

    async def get_context(self, session_id: str, user_id: str) -> str:
        return ""

    async def add_messages(self, session_id: str, user_id: str, messages: list[MemoryMessage]) -> None:
        return None


class ZepMemoryStore(LongTermMemoryStore):
    """
    Thin client over the Zep v2 threads API.

    The user and thread are created on first use and remembered for the
    life of the process; creation errors (typically "already exists") are
    ignored. Context reads and message writes raise :class:`MemoryStoreError`.
    """

    def __init__(
        self,
        config: MemoryConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._known_users: set[str] = set()
        self._known_threads: set[str] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                timeout=self.config.timeout,
                headers={"Authorization": f"Api-Key {self.config.api_key}"},
                transport=self._transport,
            )
        return self._client

    async def _create(self, path: str, payload: dict[str, Any]) -> bool:
        try:
            response = await self._get_client().post(path, json=payload)
        except httpx.HTTPError as e:
            logger.debug("memory_ensure_failed", path=path, error_type=type(e).__name__)
            return False
        # 400/409 mean the record already exists
        return response.is_success or response.status_code in (400, 409)

    async def _ensure_user_thread(self, user_id: str, thread_id: str) -> None:
        if user_id not in self._known_users:
            if await self._create("/users", {"user_id": user_id}):
                self._known_users.add(user_id)
        if thread_id not in self._known_threads:
            if await self._create("/threads", {"thread_id": thread_id, "user_id": user_id}):
                self._known_threads.add(thread_id)

    async def get_context(self, session_id: str, user_id: str) -> str:
        await self._ensure_user_thread(user_id, session_id)
        try:
            response = await self._get_client().get(f"/threads/{session_id}/context")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MemoryStoreError(f"Memory context read failed: {type(e).__name__}") from e
        context = data.get("context") if isinstance(data, dict) else None
        return context if isinstance(context, str) else ""

    async def add_messages(self, session_id: str, user_id: str, messages: list[MemoryMessage]) -> None:
        await self._ensure_user_thread(user_id, session_id)
        payload = {"messages": [{"role": m["role"], "content": m["content"]} for m in messages]}
        try:
            response = await self._get_client().post(f"/threads/{session_id}/messages", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MemoryStoreError(f"Memory write failed: {type(e).__name__}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_memory_store(config: MemoryConfig) -> LongTermMemoryStore:
    if config.enabled:
        return ZepMemoryStore(config)
    return NullMemoryStore()
