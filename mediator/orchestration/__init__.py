"""
Orchestration Package

Core of the mediator:
- Policy store (agent allowlists, API key scopes)
- Turn recorder (one sealed record per turn)
- Turn state machine driving the worker model and agent calls
"""

from .orchestrator import Orchestrator, new_correlation_id
from .recorder import TurnHandle, TurnRecorder
from .state import TOOL_LOOP_EXCEEDED, TurnOutcome, TurnState
from .tool_policy import PolicySnapshot, PolicyStore, build_policy_store

__all__ = [
    "Orchestrator",
    "PolicySnapshot",
    "PolicyStore",
    "TOOL_LOOP_EXCEEDED",
    "TurnHandle",
    "TurnOutcome",
    "TurnRecorder",
    "TurnState",
    "build_policy_store",
    "new_correlation_id",
]
