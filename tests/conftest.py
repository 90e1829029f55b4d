from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest

from nexus.compression.client import CompressionClient
from nexus.config.schema import Config
from nexus.db import repository
from nexus.db.engine import Database
from nexus.db.models import Project
from nexus.memory.longterm import LongTermMemoryStore, MemoryMessage
from nexus.providers.base import (
    ChatRequest,
    CompletionRequest,
    CompletionResult,
    ProviderAdapter,
    ProviderName,
    StreamChunk,
)
from nexus.providers.registry import ProviderRegistry
from nexus.services import Services

DEV_USER = "dev-user"
SUMMARY_JSON = '{"title": "Greeting", "summary_2sent": "The user said hello. The assistant greeted them back."}'


class FakeAdapter(ProviderAdapter):
    """Scripted adapter: streams *chunks*, optionally failing at a chosen point."""

    def __init__(
        self,
        chunks: tuple[str, ...] | list[str] = ("Hi", " there"),
        *,
        name: ProviderName = ProviderName.OPENAI,
        stream_error: Exception | None = None,
        error_after: int | None = None,
        completion: str = SUMMARY_JSON,
        complete_error: Exception | None = None,
        request_id: str | None = "req-123",
    ) -> None:
        self.name = name
        self.chunks = list(chunks)
        self.stream_error = stream_error
        self.error_after = error_after
        self.completion = completion
        self.complete_error = complete_error
        self.request_id = request_id
        self.chat_requests: list[ChatRequest] = []
        self.complete_requests: list[CompletionRequest] = []
        self.yielded = 0
        self.exhausted = False

    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        self.chat_requests.append(request)
        if self.stream_error is not None and self.error_after is None:
            raise self.stream_error
        for i, text in enumerate(self.chunks):
            if self.stream_error is not None and i == self.error_after:
                raise self.stream_error
            self.yielded += 1
            yield StreamChunk(text=text, request_id=self.request_id)
        self.exhausted = True

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.complete_requests.append(request)
        if self.complete_error is not None:
            raise self.complete_error
        return CompletionResult(text=self.completion, request_id="sum-1", usage={"total_tokens": 12})


class FakeMemoryStore(LongTermMemoryStore):
    def __init__(self, context: str = "", *, read_error: Exception | None = None, write_error: Exception | None = None) -> None:
        self.context = context
        self.read_error = read_error
        self.write_error = write_error
        self.reads: list[tuple[str, str]] = []
        self.writes: list[tuple[str, str, list[MemoryMessage]]] = []

    async def get_context(self, session_id: str, user_id: str) -> str:
        self.reads.append((session_id, user_id))
        if self.read_error is not None:
            raise self.read_error
        return self.context

    async def add_messages(self, session_id: str, user_id: str, messages: list[MemoryMessage]) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((session_id, user_id, messages))


@pytest.fixture
def fake_adapter_cls() -> type[FakeAdapter]:
    return FakeAdapter


@pytest.fixture
def fake_memory_cls() -> type[FakeMemoryStore]:
    return FakeMemoryStore


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'nexus.db'}"


@pytest.fixture
async def database(db_url: str) -> AsyncIterator[Database]:
    db = Database(db_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def project(database: Database) -> Project:
    async with database.transaction() as session:
        return await repository.create_project(session, DEV_USER, "Test project")


@pytest.fixture
def make_services() -> Callable[..., Services]:
    """Build the real pipeline around fakes; the database is passed in explicitly."""

    def _make(
        database: Database,
        *adapters: ProviderAdapter,
        memory_store: LongTermMemoryStore | None = None,
        compressor: CompressionClient | None = None,
        **config_overrides: Any,
    ) -> Services:
        config = Config(dev_user_id=DEV_USER, **config_overrides)
        registry = ProviderRegistry({a.name: a for a in (adapters or (FakeAdapter(),))})
        return Services.build(
            config,
            database=database,
            providers=registry,
            compressor=compressor,
            memory_store=memory_store or FakeMemoryStore(),
        )

    return _make
