"""Turn orchestration: assemble, stream, summarize, persist, sync memory."""

from __future__ import annotations

import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from nexus.db import repository
from nexus.db.engine import Database
from nexus.db.models import Turn
from nexus.errors import NexusError, NotFoundError, PersistenceError
from nexus.graph.linker import GraphLinker
from nexus.logging import bound_context, get_logger
from nexus.memory.assembler import AssembledContext, ContextAssembler
from nexus.memory.longterm import LongTermMemoryStore, MemoryMessage, NullMemoryStore
from nexus.memory.summarizer import TurnSummarizer, TurnSummary, fallback_summary
from nexus.providers.base import ChatRequest, ProviderAdapter
from nexus.providers.registry import ProviderRegistry
from nexus.turn.events import TurnEvent, TurnState, can_transition

logger = get_logger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]

# Wire-safe replacements for unexpected exceptions, by the state they escaped from
_FALLBACK_ERRORS: dict[TurnState, tuple[str, str]] = {
    TurnState.ASSEMBLING: ("internal_error", "Failed to prepare the turn"),
    TurnState.STREAMING: ("provider_error", "Provider request failed"),
    TurnState.PERSISTING: (PersistenceError.code, "Failed to persist the turn"),
    TurnState.SYNCING_MEMORY: ("internal_error", "Failed to finish the turn"),
}


@dataclass(frozen=True)
class TurnRequest:
    project_id: str
    provider: str
    model: str
    user_text: str


@dataclass
class _TurnRun:
    """Mutable bookkeeping for one pass through the pipeline."""

    request: TurnRequest
    run_id: str
    state: TurnState = TurnState.ASSEMBLING
    parts: list[str] = field(default_factory=list)
    request_id: str | None = None
    latency_ms: int | None = None

    @property
    def assistant_text(self) -> str:
        return "".join(self.parts)

    def advance(self, target: TurnState) -> None:
        if not can_transition(self.state, target):
            raise RuntimeError(f"Illegal turn transition {self.state.value} -> {target.value}")
        logger.debug("turn_state", source=self.state.value, target=target.value)
        self.state = target


class TurnOrchestrator:
    """
    Drives one user message through the turn pipeline.

    :meth:`run` is an async generator of :class:`TurnEvent`: zero or more
    ``token`` events followed by exactly one terminal ``complete`` or
    ``error``. Nothing is persisted unless the model stream finishes.

    If the consumer stops iterating (``aclose``) or ``is_disconnected``
    reports a gone caller, the provider stream is closed and the turn is
    abandoned without writing a Turn, a node, or long-term memory.
    """

    def __init__(
        self,
        *,
        database: Database,
        providers: ProviderRegistry,
        assembler: ContextAssembler,
        linker: GraphLinker,
        summarizer: TurnSummarizer | None = None,
        memory_store: LongTermMemoryStore | None = None,
        user_id: str = "dev-user",
    ) -> None:
        self.database = database
        self.providers = providers
        self.assembler = assembler
        self.linker = linker
        self.summarizer = summarizer or TurnSummarizer()
        self.memory_store = memory_store or NullMemoryStore()
        self.user_id = user_id

    async def _assemble(self, request: TurnRequest) -> AssembledContext:
        async with self.database.transaction() as session:
            project = await repository.get_owned_project(session, request.project_id, self.user_id)
            if project is None:
                raise NotFoundError("Project not found")
            await repository.upsert_memory_session(
                session, request.project_id, self.user_id, session_id=request.project_id
            )
            pinned = await repository.list_pinned_summaries(session, request.project_id)

        return await self.assembler.assemble(
            session_id=request.project_id,
            user_id=self.user_id,
            pinned_summaries=pinned,
            user_text=request.user_text,
        )

    async def _summarize(self, run: _TurnRun, adapter: ProviderAdapter) -> TurnSummary:
        try:
            return await self.summarizer.summarize(
                adapter,
                model=run.request.model,
                user_text=run.request.user_text,
                assistant_text=run.assistant_text,
            )
        except Exception as e:
            logger.warning("summarize_failed", error_type=type(e).__name__, error=str(e))
            return fallback_summary(run.request.user_text, run.assistant_text)

    def _build_turn(self, run: _TurnRun, provider: str, assembled: AssembledContext) -> Turn:
        turn = Turn(
            project_id=run.request.project_id,
            provider=provider,
            model=run.request.model,
            user_text=run.request.user_text,
            assistant_text=run.assistant_text,
            injected_context_text=assembled.text,
            latency_ms=run.latency_ms,
            provider_request_id=run.request_id,
        )
        compression, policy = assembled.compression, assembled.compression_policy
        if compression is not None and policy is not None:
            turn.compression_aggressiveness = policy.aggressiveness
            turn.compression_max_output_tokens = policy.max_output_tokens
            turn.compression_min_output_tokens = policy.min_output_tokens
            turn.compression_input_tokens = compression.original_input_tokens
            turn.compression_output_tokens = compression.output_tokens
            turn.compression_ratio = compression.ratio
            turn.compression_time_ms = compression.compression_time
        return turn

    async def _sync_memory(self, run: _TurnRun) -> None:
        messages: list[MemoryMessage] = [
            {"role": "user", "content": run.request.user_text},
            {"role": "assistant", "content": run.assistant_text},
        ]
        try:
            await self.memory_store.add_messages(run.request.project_id, self.user_id, messages)
        except Exception as e:
            logger.warning("memory_sync_failed", error_type=type(e).__name__, error=str(e))

    def _fail(self, run: _TurnRun, exc: Exception) -> TurnEvent:
        failed_in = run.state
        run.advance(TurnState.ERROR)
        if isinstance(exc, NexusError):
            logger.warning(
                "turn_failed",
                state=failed_in.value,
                code=exc.code,
                error=exc.message,
                retryable=exc.retryable,
                streamed=bool(run.parts),
            )
            return TurnEvent.error(exc)
        logger.exception("turn_failed_unexpectedly", state=failed_in.value, streamed=bool(run.parts))
        code, message = _FALLBACK_ERRORS.get(failed_in, ("internal_error", "Turn failed"))
        return TurnEvent.error(NexusError(message, code=code))

    async def run(
        self,
        request: TurnRequest,
        *,
        is_disconnected: DisconnectProbe | None = None,
    ) -> AsyncIterator[TurnEvent]:
        run = _TurnRun(request=request, run_id=uuid.uuid4().hex[:12])
        with bound_context(
            project_id=request.project_id,
            provider=request.provider,
            model=request.model,
            user_id=self.user_id,
            turn_run_id=run.run_id,
        ):
            try:
                assembled = await self._assemble(request)

                run.advance(TurnState.STREAMING)
                adapter = self.providers.get(request.provider)
                chat = ChatRequest(model=request.model, context=assembled.text, user_text=request.user_text)
                started = time.monotonic()
                async with aclosing(adapter.stream_chat(chat)) as stream:
                    async for chunk in stream:
                        if run.request_id is None and chunk.request_id:
                            run.request_id = chunk.request_id
                        if not chunk.text:
                            continue
                        run.parts.append(chunk.text)
                        yield TurnEvent.token(chunk.text)
                        if is_disconnected is not None and await is_disconnected():
                            logger.info("turn_aborted_by_caller", streamed_chars=len(run.assistant_text))
                            return
                run.latency_ms = int((time.monotonic() - started) * 1000)

                run.advance(TurnState.SUMMARIZING)
                summary = await self._summarize(run, adapter)

                run.advance(TurnState.PERSISTING)
                turn = self._build_turn(run, adapter.name.value, assembled)
                node = await self.linker.record_turn(turn, title=summary.title, summary=summary.summary)

                run.advance(TurnState.SYNCING_MEMORY)
                await self._sync_memory(run)

                run.advance(TurnState.COMPLETE)
                logger.info(
                    "turn_complete",
                    turn_id=turn.id,
                    node_id=node.id,
                    latency_ms=run.latency_ms,
                    compressed=assembled.compressed,
                )
            except Exception as e:
                yield self._fail(run, e)
                return

            yield TurnEvent.complete(turn.id, node.id)
