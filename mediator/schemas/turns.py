from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .agents import AgentResult, ToolCallRequest


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"
    FAILED = "failed"


class ToolCallEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    request: ToolCallRequest
    result: AgentResult


class TurnRecord(BaseModel):
    """Sealed, immutable account of one conversation turn."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(..., min_length=1)
    prompt_summary: str = ""
    tool_calls: tuple[ToolCallEntry, ...] = ()
    final_answer_summary: str = ""
    status: TurnStatus = TurnStatus.COMPLETED
    key_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sealed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def tools_used(self) -> list[str]:
        return [entry.request.tool_name for entry in self.tool_calls]

    @property
    def anomalies(self) -> list[str]:
        found: list[str] = []
        for entry in self.tool_calls:
            found.extend(getattr(entry.result, "anomalies", ()))
        return found


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., min_length=1)


class TurnRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    api_key: str | None = Field(default=None, description="Client API key; the X-API-Key header is used when absent.")
    history: list[ChatMessage] = Field(default_factory=list, description="Earlier messages of the conversation.")


class TurnResponse(BaseModel):
    answer: str
    correlation_id: str
    status: TurnStatus = TurnStatus.COMPLETED
    tool_calls: int = Field(0, ge=0)
    markers: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: str
    detail: str
    correlation_id: str | None = None


__all__ = [
    "ChatMessage",
    "ErrorResponse",
    "ToolCallEntry",
    "TurnRecord",
    "TurnRequest",
    "TurnResponse",
    "TurnStatus",
]
