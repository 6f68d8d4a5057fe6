from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from ..schemas.turns import TurnRecord, TurnStatus

TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


class TurnState(str, Enum):
    RECEIVED = "received"
    AWAITING_WORKER = "awaiting_worker"
    TOOL_REQUESTED = "tool_requested"
    AWAITING_AGENT = "awaiting_agent"
    FINALIZED = "finalized"
    SEALED = "sealed"


# FINALIZED is reachable from every in-flight state so a failed turn can still be sealed.
_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.RECEIVED: frozenset({TurnState.AWAITING_WORKER, TurnState.FINALIZED}),
    TurnState.AWAITING_WORKER: frozenset({TurnState.TOOL_REQUESTED, TurnState.FINALIZED}),
    TurnState.TOOL_REQUESTED: frozenset({TurnState.AWAITING_AGENT, TurnState.FINALIZED}),
    TurnState.AWAITING_AGENT: frozenset({TurnState.AWAITING_WORKER, TurnState.FINALIZED}),
    TurnState.FINALIZED: frozenset({TurnState.SEALED}),
    TurnState.SEALED: frozenset(),
}


def can_transition(current: TurnState, target: TurnState) -> bool:
    return target in _TRANSITIONS[current]


class TurnOutcome(BaseModel):
    """What the synchronous path hands back to the caller."""

    correlation_id: str
    answer: str
    status: TurnStatus = TurnStatus.COMPLETED
    round_trips: int = Field(0, ge=0)
    record: TurnRecord

    @property
    def tool_calls(self) -> int:
        return len(self.record.tool_calls)

    @property
    def markers(self) -> list[str]:
        return [TOOL_LOOP_EXCEEDED] if self.status is TurnStatus.TOOL_LOOP_EXCEEDED else []


__all__ = ["TOOL_LOOP_EXCEEDED", "TurnOutcome", "TurnState", "can_transition"]
