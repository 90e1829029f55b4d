import json

import pytest

from nexus.errors import NotFoundError, ProviderError
from nexus.turn.events import (
    TURN_EVENT_COMPLETE,
    TURN_EVENT_ERROR,
    TURN_EVENT_TOKEN,
    TurnEvent,
    TurnState,
    can_transition,
)

_PIPELINE = [
    TurnState.ASSEMBLING,
    TurnState.STREAMING,
    TurnState.SUMMARIZING,
    TurnState.PERSISTING,
    TurnState.SYNCING_MEMORY,
    TurnState.COMPLETE,
]


def test_pipeline_moves_forward_one_step_at_a_time() -> None:
    for current, target in zip(_PIPELINE, _PIPELINE[1:]):
        assert can_transition(current, target)
    assert not can_transition(TurnState.ASSEMBLING, TurnState.PERSISTING)
    assert not can_transition(TurnState.PERSISTING, TurnState.STREAMING)


@pytest.mark.parametrize("state", _PIPELINE[:-1])
def test_error_reachable_from_live_states(state: TurnState) -> None:
    assert can_transition(state, TurnState.ERROR)


@pytest.mark.parametrize("state", [TurnState.COMPLETE, TurnState.ERROR])
def test_terminal_states_are_final(state: TurnState) -> None:
    assert not any(can_transition(state, target) for target in TurnState)


def test_event_payloads_and_sse_shape() -> None:
    token = TurnEvent.token("héllo")
    complete = TurnEvent.complete("t1", "n1")

    assert token.event == TURN_EVENT_TOKEN and not token.terminal
    assert token.to_sse() == {"event": "token", "data": '{"text": "héllo"}'}
    assert complete.event == TURN_EVENT_COMPLETE and complete.terminal
    assert json.loads(complete.to_sse()["data"]) == {"turnId": "t1", "nodeId": "n1"}


def test_error_event_carries_retryable_only_for_provider_errors() -> None:
    provider = TurnEvent.error(ProviderError("openai", "Rate limited", retryable=True))
    missing = TurnEvent.error(NotFoundError("Project not found"))

    assert provider.event == TURN_EVENT_ERROR and provider.terminal
    assert provider.data == {"code": "openai_error", "message": "Rate limited", "retryable": True}
    assert missing.data == {"code": "not_found", "message": "Project not found"}
