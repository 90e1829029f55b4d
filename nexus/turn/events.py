"""Typed wire events and pipeline states for a single turn."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, NotRequired, TypeAlias, TypedDict

from nexus.errors import NexusError

TURN_EVENT_TOKEN = "token"
TURN_EVENT_COMPLETE = "complete"
TURN_EVENT_ERROR = "error"

TurnEventName: TypeAlias = Literal["token", "complete", "error"]

TERMINAL_EVENTS = frozenset({TURN_EVENT_COMPLETE, TURN_EVENT_ERROR})


class TokenPayload(TypedDict):
    text: str


class CompletePayload(TypedDict):
    turnId: str
    nodeId: str


class ErrorPayload(TypedDict):
    code: str
    message: str
    retryable: NotRequired[bool]


TurnEventPayload: TypeAlias = TokenPayload | CompletePayload | ErrorPayload


class TurnState(str, Enum):
    ASSEMBLING = "assembling"
    STREAMING = "streaming"
    SUMMARIZING = "summarizing"
    PERSISTING = "persisting"
    SYNCING_MEMORY = "syncing_memory"
    COMPLETE = "complete"
    ERROR = "error"


_NEXT_STATE: dict[TurnState, TurnState] = {
    TurnState.ASSEMBLING: TurnState.STREAMING,
    TurnState.STREAMING: TurnState.SUMMARIZING,
    TurnState.SUMMARIZING: TurnState.PERSISTING,
    TurnState.PERSISTING: TurnState.SYNCING_MEMORY,
    TurnState.SYNCING_MEMORY: TurnState.COMPLETE,
}


def can_transition(current: TurnState, target: TurnState) -> bool:
    """Forward one step at a time; ``error`` is reachable from any live state."""
    if current in (TurnState.COMPLETE, TurnState.ERROR):
        return False
    if target is TurnState.ERROR:
        return True
    return _NEXT_STATE.get(current) is target


@dataclass(frozen=True)
class TurnEvent:
    event: TurnEventName
    data: TurnEventPayload

    @property
    def terminal(self) -> bool:
        return self.event in TERMINAL_EVENTS

    def to_sse(self) -> dict[str, str]:
        """Shape accepted by ``sse_starlette.EventSourceResponse``."""
        return {"event": self.event, "data": json.dumps(self.data, ensure_ascii=False)}

    @classmethod
    def token(cls, text: str) -> "TurnEvent":
        return cls(TURN_EVENT_TOKEN, {"text": text})

    @classmethod
    def complete(cls, turn_id: str, node_id: str) -> "TurnEvent":
        return cls(TURN_EVENT_COMPLETE, {"turnId": turn_id, "nodeId": node_id})

    @classmethod
    def error(cls, exc: NexusError) -> "TurnEvent":
        payload: dict[str, Any] = exc.to_wire()
        return cls(TURN_EVENT_ERROR, payload)  # type: ignore[arg-type]
