"""Turn pipeline."""

from nexus.turn.events import TurnEvent, TurnState
from nexus.turn.orchestrator import TurnOrchestrator, TurnRequest

__all__ = ["TurnEvent", "TurnOrchestrator", "TurnRequest", "TurnState"]
