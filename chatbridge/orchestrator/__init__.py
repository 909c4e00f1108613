"""Turn orchestration."""

from chatbridge.orchestrator.core import Orchestrator, TurnState

__all__ = ["Orchestrator", "TurnState"]
