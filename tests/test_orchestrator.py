"""End-to-end tests for the turn pipeline against a real SQLite database."""

import uuid

import httpx
import pytest
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from nexus.compression.client import CompressionClient
from nexus.config.schema import CompressionConfig
from nexus.db import repository
from nexus.db.models import GraphEdge, GraphNode, MemorySession, Turn
from nexus.errors import ProviderError
from nexus.graph.linker import GraphLinker
from nexus.providers.base import ProviderName
from nexus.turn.events import TurnEvent
from nexus.turn.orchestrator import TurnRequest


def _request(project_id: str, text: str = "Hello", provider: str = "openai") -> TurnRequest:
    return TurnRequest(project_id=project_id, provider=provider, model="gpt-4o-mini", user_text=text)


async def _collect(services, request, **kwargs) -> list[TurnEvent]:
    return [event async for event in services.orchestrator.run(request, **kwargs)]


async def _all(database, model):
    async with database.session() as session:
        return list((await session.execute(select(model))).scalars())


async def _count(database, model) -> int:
    async with database.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def _assert_stream_shape(events: list[TurnEvent]) -> None:
    """token* followed by exactly one terminal event."""
    assert events, "stream produced no events"
    assert all(e.event == "token" for e in events[:-1])
    assert events[-1].event in ("complete", "error")


async def _pin_node(database, project_id: str, summary: str) -> None:
    linker = GraphLinker(database)
    turn = Turn(
        project_id=project_id,
        provider="openai",
        model="m",
        user_text="u",
        assistant_text="a",
        injected_context_text="c",
    )
    node = await linker.record_turn(turn, title=None, summary=summary)
    async with database.transaction() as session:
        stored = await session.get(GraphNode, node.id)
        stored.pinned = True


def _compressor(handler) -> CompressionClient:
    return CompressionClient(CompressionConfig(api_key="tc-key-1234567890"), transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# 1. Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_turn_streams_and_persists(database, project, make_services, fake_adapter_cls, fake_memory_cls):
    adapter = fake_adapter_cls(["Hi", " there"])
    memory = fake_memory_cls()
    services = make_services(database, adapter, memory_store=memory)

    events = await _collect(services, _request(project.id))

    _assert_stream_shape(events)
    assert [e.event for e in events] == ["token", "token", "complete"]
    assert [e.data["text"] for e in events[:2]] == ["Hi", " there"]

    turns = await _all(database, Turn)
    nodes = await _all(database, GraphNode)
    assert len(turns) == 1
    assert len(nodes) == 1
    assert events[-1].data == {"turnId": turns[0].id, "nodeId": nodes[0].id}
    assert await _count(database, GraphEdge) == 0

    turn = turns[0]
    assert turn.assistant_text == "Hi there"
    assert turn.user_text == "Hello"
    assert turn.provider == "openai"
    assert turn.provider_request_id == "req-123"
    assert turn.latency_ms is not None and turn.latency_ms >= 0
    assert turn.injected_context_text == adapter.chat_requests[0].context
    assert turn.injected_context_text.endswith("[User Message]\n\nHello")
    assert nodes[0].turn_id == turn.id
    assert nodes[0].title == "Greeting"

    assert memory.writes == [
        (project.id, "dev-user", [{"role": "user", "content": "Hello"}, {"role": "assistant", "content": "Hi there"}])
    ]


@pytest.mark.asyncio
async def test_second_turn_follows_first(database, project, make_services, fake_adapter_cls):
    services = make_services(database, fake_adapter_cls(["Hi", " there"]))

    first = await _collect(services, _request(project.id))
    second = await _collect(services, _request(project.id, "Again"))

    edges = await _all(database, GraphEdge)
    assert len(edges) == 1
    assert edges[0].src_node_id == first[-1].data["nodeId"]
    assert edges[0].dst_node_id == second[-1].data["nodeId"]
    assert edges[0].rel_type == "follows"


@pytest.mark.asyncio
async def test_session_upsert_is_idempotent(database, project, make_services):
    services = make_services(database)

    await _collect(services, _request(project.id))
    await _collect(services, _request(project.id, "Again"))

    sessions = await _all(database, MemorySession)
    assert len(sessions) == 1
    assert sessions[0].project_id == project.id
    assert sessions[0].session_id == project.id
    assert sessions[0].user_id == "dev-user"


@pytest.mark.asyncio
async def test_long_term_memory_is_injected(database, project, make_services, fake_adapter_cls, fake_memory_cls):
    adapter = fake_adapter_cls()
    memory = fake_memory_cls("<FACTS>\n- The user loves tomatoes\n- Unrelated fact\n</FACTS>")
    services = make_services(database, adapter, memory_store=memory)

    await _collect(services, _request(project.id, "Any tips for tomatoes?"))

    context = adapter.chat_requests[0].context
    assert "[Long-Term Memory]\n\n# These are the most relevant facts\n- The user loves tomatoes" in context
    assert "Unrelated fact" not in context
    assert memory.reads == [(project.id, "dev-user")]


@pytest.mark.asyncio
async def test_log_context_is_unbound_after_turn(database, project, make_services):
    services = make_services(database)
    await _collect(services, _request(project.id))
    ctx = structlog.contextvars.get_contextvars()
    assert "turn_run_id" not in ctx
    assert "project_id" not in ctx


# ---------------------------------------------------------------------------
# 2. Failures before anything is persisted
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_provider_error_before_first_token(database, project, make_services, fake_adapter_cls, fake_memory_cls):
    adapter = fake_adapter_cls(stream_error=ProviderError("openai", "rate limited", retryable=True))
    memory = fake_memory_cls()
    services = make_services(database, adapter, memory_store=memory)

    events = await _collect(services, _request(project.id))

    _assert_stream_shape(events)
    assert len(events) == 1
    assert events[0].data == {"code": "openai_error", "message": "rate limited", "retryable": True}
    assert await _count(database, Turn) == 0
    assert await _count(database, GraphNode) == 0
    assert memory.writes == []


@pytest.mark.asyncio
async def test_provider_error_mid_stream_persists_nothing(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls(
        ["Hi", " there", "!"],
        stream_error=ProviderError("openai", "connection reset"),
        error_after=1,
    )
    services = make_services(database, adapter)

    events = await _collect(services, _request(project.id))

    _assert_stream_shape(events)
    assert [e.event for e in events] == ["token", "error"]
    assert await _count(database, Turn) == 0
    assert await _count(database, GraphNode) == 0


@pytest.mark.asyncio
async def test_unexpected_stream_exception_gets_generic_code(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls(stream_error=KeyError("choices"))
    services = make_services(database, adapter)

    events = await _collect(services, _request(project.id))

    assert events[-1].data == {"code": "provider_error", "message": "Provider request failed"}
    assert "choices" not in events[-1].to_sse()["data"]


@pytest.mark.asyncio
async def test_unknown_project_is_not_found(database, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls()
    services = make_services(database, adapter)

    events = await _collect(services, _request(str(uuid.uuid4())))

    assert [e.event for e in events] == ["error"]
    assert events[0].data == {"code": "not_found", "message": "Project not found"}
    assert adapter.chat_requests == []
    assert await _count(database, MemorySession) == 0


@pytest.mark.asyncio
async def test_project_of_another_user_is_not_found(database, make_services, fake_adapter_cls):
    async with database.transaction() as session:
        foreign = await repository.create_project(session, "someone-else", "Theirs")
    adapter = fake_adapter_cls()
    services = make_services(database, adapter)

    events = await _collect(services, _request(foreign.id))

    assert events[0].data["code"] == "not_found"
    assert adapter.chat_requests == []


@pytest.mark.asyncio
async def test_unsupported_provider(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls()
    services = make_services(database, adapter)

    events = await _collect(services, _request(project.id, provider="mistral"))

    assert [e.event for e in events] == ["error"]
    assert events[0].data["code"] == "unsupported_provider"
    assert adapter.chat_requests == []


@pytest.mark.asyncio
async def test_provider_is_selected_by_name(database, project, make_services, fake_adapter_cls):
    openai = fake_adapter_cls(["from openai"])
    anthropic = fake_adapter_cls(["from anthropic"], name=ProviderName.ANTHROPIC)
    services = make_services(database, openai, anthropic)

    events = await _collect(services, _request(project.id, provider="anthropic"))

    assert events[0].data == {"text": "from anthropic"}
    assert openai.chat_requests == []
    turns = await _all(database, Turn)
    assert turns[0].provider == "anthropic"


# ---------------------------------------------------------------------------
# 3. Soft failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_summarizer_failure_uses_fallback(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls(["Hi", " there"], complete_error=ProviderError("openai", "overloaded"))
    services = make_services(database, adapter)

    events = await _collect(services, _request(project.id))

    assert events[-1].event == "complete"
    node = (await _all(database, GraphNode))[0]
    assert node.title is None
    assert node.summary == "Hello / Hi there"


@pytest.mark.asyncio
async def test_raising_summarizer_still_completes(database, project, make_services, monkeypatch):
    services = make_services(database)

    async def _boom(*args, **kwargs):
        raise RuntimeError("summarizer bug")

    monkeypatch.setattr(services.orchestrator.summarizer, "summarize", _boom)

    events = await _collect(services, _request(project.id))

    _assert_stream_shape(events)
    assert [e.event for e in events] == ["token", "token", "complete"]
    assert await _count(database, Turn) == 1
    node = (await _all(database, GraphNode))[0]
    assert node.title is None
    assert node.summary == "Hello / Hi there"


@pytest.mark.asyncio
async def test_unparsable_summary_uses_fallback(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls(["Hi"], completion="Sorry, no JSON today. LEAKED")
    services = make_services(database, adapter)

    await _collect(services, _request(project.id))

    node = (await _all(database, GraphNode))[0]
    assert node.summary == "Hello / Hi"
    assert "LEAKED" not in node.summary


@pytest.mark.asyncio
async def test_memory_sync_failure_is_swallowed(database, project, make_services, fake_memory_cls):
    memory = fake_memory_cls(write_error=RuntimeError("zep down"))
    services = make_services(database, memory_store=memory)

    events = await _collect(services, _request(project.id))

    assert events[-1].event == "complete"
    assert await _count(database, Turn) == 1


@pytest.mark.asyncio
async def test_compression_failure_records_no_metadata(database, project, make_services, fake_adapter_cls):
    await _pin_node(database, project.id, "The user prefers metric units.")
    adapter = fake_adapter_cls()
    services = make_services(database, adapter, compressor=_compressor(lambda request: httpx.Response(502)))

    events = await _collect(services, _request(project.id))

    assert events[-1].event == "complete"
    turn = next(t for t in await _all(database, Turn) if t.id == events[-1].data["turnId"])
    assert "[Pinned Context]\n\n- The user prefers metric units.\n\n" in turn.injected_context_text
    assert turn.compression_aggressiveness is None
    assert turn.compression_input_tokens is None
    assert turn.compression_ratio is None
    assert turn.compression_time_ms is None


@pytest.mark.asyncio
async def test_compression_metadata_is_recorded(database, project, make_services, fake_adapter_cls):
    await _pin_node(database, project.id, "The user prefers metric units.")

    def handler(request):
        return httpx.Response(
            200, json={"output": "metric units", "output_tokens": 2, "original_input_tokens": 8, "compression_time": 5}
        )

    adapter = fake_adapter_cls()
    services = make_services(database, adapter, compressor=_compressor(handler))

    events = await _collect(services, _request(project.id))

    turn = next(t for t in await _all(database, Turn) if t.id == events[-1].data["turnId"])
    assert "[Pinned Context]\n\nmetric units\n\n" in turn.injected_context_text
    assert turn.compression_aggressiveness == 0.4
    assert turn.compression_max_output_tokens == 512
    assert turn.compression_min_output_tokens == 64
    assert turn.compression_input_tokens == 8
    assert turn.compression_output_tokens == 2
    assert turn.compression_ratio == pytest.approx(0.25)
    assert turn.compression_time_ms == 5


@pytest.mark.asyncio
async def test_deleted_pins_are_not_injected(database, project, make_services, fake_adapter_cls):
    await _pin_node(database, project.id, "Old pinned fact.")
    async with database.transaction() as session:
        node = (await session.execute(select(GraphNode))).scalars().one()
        node.deleted_at = node.created_at

    adapter = fake_adapter_cls()
    services = make_services(database, adapter)
    await _collect(services, _request(project.id))

    assert "Old pinned fact." not in adapter.chat_requests[0].context


# ---------------------------------------------------------------------------
# 4. Persistence failure after streaming
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_persistence_failure_after_tokens(database, project, make_services, fake_memory_cls, monkeypatch):
    memory = fake_memory_cls()
    services = make_services(database, memory_store=memory)

    async def broken(session, project_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr("nexus.graph.linker.repository.next_node_position", broken)

    events = await _collect(services, _request(project.id))

    _assert_stream_shape(events)
    assert [e.event for e in events] == ["token", "token", "error"]
    assert events[-1].data["code"] == "persistence_error"
    assert await _count(database, Turn) == 0
    assert memory.writes == []


@pytest.mark.asyncio
async def test_unexpected_persistence_exception_is_generic(database, project, make_services, monkeypatch):
    services = make_services(database)

    async def explode(turn, *, title, summary):
        raise RuntimeError("traceback details")

    monkeypatch.setattr(services.orchestrator.linker, "record_turn", explode)

    events = await _collect(services, _request(project.id))

    assert events[-1].data == {"code": "persistence_error", "message": "Failed to persist the turn"}


# ---------------------------------------------------------------------------
# 5. Caller abort
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_consumer_close_abandons_turn(database, project, make_services, fake_adapter_cls, fake_memory_cls):
    adapter = fake_adapter_cls(["Hi", " there", "!"])
    memory = fake_memory_cls()
    services = make_services(database, adapter, memory_store=memory)

    stream = services.orchestrator.run(_request(project.id))
    first = await stream.__anext__()
    await stream.aclose()

    assert first.data == {"text": "Hi"}
    assert adapter.exhausted is False
    assert adapter.yielded == 1
    assert await _count(database, Turn) == 0
    assert await _count(database, GraphNode) == 0
    assert memory.writes == []


@pytest.mark.asyncio
async def test_disconnect_probe_stops_stream(database, project, make_services, fake_adapter_cls):
    adapter = fake_adapter_cls(["Hi", " there", "!"])
    services = make_services(database, adapter)
    checks = []

    async def is_disconnected() -> bool:
        checks.append(True)
        return len(checks) >= 2

    events = await _collect(services, _request(project.id), is_disconnected=is_disconnected)

    assert [e.data for e in events] == [{"text": "Hi"}, {"text": " there"}]
    assert adapter.exhausted is False
    assert await _count(database, Turn) == 0
