from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..core.config import OrchestratorSettings
from ..core.exceptions import AlreadySealedError, DuplicateCorrelationError
from ..core.logging import get_logger
from ..schemas.agents import AgentFailure, AgentSuccess, ToolCallRequest
from ..schemas.turns import ToolCallEntry, TurnRecord, TurnStatus
from ..utils.text import truncate_chars

logger = get_logger(name=__name__)


@dataclass(slots=True)
class TurnHandle:
    correlation_id: str
    key_id: str | None = None
    record: TurnRecord | None = None

    @property
    def sealed(self) -> bool:
        return self.record is not None


@dataclass(slots=True)
class _TurnDraft:
    prompt_summary: str
    key_id: str | None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tool_calls: list[ToolCallEntry] = field(default_factory=list)


class TurnRecorder:
    """Assemble one record per turn; each record is sealed exactly once."""

    def __init__(
        self,
        *,
        prompt_summary_chars: int = 2_000,
        answer_summary_chars: int = 2_000,
        remembered_ids: int = 10_000,
    ) -> None:
        self._prompt_chars = prompt_summary_chars
        self._answer_chars = answer_summary_chars
        self._drafts: dict[str, _TurnDraft] = {}
        self._sealed_order: deque[str] = deque()
        self._sealed_ids: set[str] = set()
        self._remembered = remembered_ids
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: OrchestratorSettings) -> "TurnRecorder":
        return cls(
            prompt_summary_chars=settings.prompt_summary_chars,
            answer_summary_chars=settings.answer_summary_chars,
            remembered_ids=settings.correlation_id_memory,
        )

    @property
    def active_count(self) -> int:
        return len(self._drafts)

    def begin(self, correlation_id: str, prompt_summary: str, *, key_id: str | None = None) -> TurnHandle:
        with self._lock:
            if correlation_id in self._drafts or correlation_id in self._sealed_ids:
                raise DuplicateCorrelationError(
                    f"Correlation id '{correlation_id}' is already in use",
                    correlation_id=correlation_id,
                )
            self._drafts[correlation_id] = _TurnDraft(
                prompt_summary=truncate_chars(prompt_summary, self._prompt_chars),
                key_id=key_id,
            )
        logger.debug("turn_begun", correlation_id=correlation_id)
        return TurnHandle(correlation_id=correlation_id, key_id=key_id)

    def record_tool_call(
        self,
        handle: TurnHandle,
        request: ToolCallRequest,
        result: AgentSuccess | AgentFailure,
    ) -> None:
        entry = ToolCallEntry(request=request.model_copy(deep=True), result=result)
        with self._lock:
            draft = self._draft_for(handle)
            draft.tool_calls.append(entry)
        logger.info(
            "turn_tool_call_recorded",
            correlation_id=handle.correlation_id,
            tool=request.tool_name,
            outcome="success" if result.ok else result.kind.value,
            sequence=len(draft.tool_calls),
        )

    def seal(
        self,
        handle: TurnHandle,
        final_answer_summary: str,
        *,
        status: TurnStatus = TurnStatus.COMPLETED,
    ) -> TurnRecord:
        with self._lock:
            draft = self._draft_for(handle)
            record = TurnRecord(
                correlation_id=handle.correlation_id,
                prompt_summary=draft.prompt_summary,
                tool_calls=tuple(draft.tool_calls),
                final_answer_summary=truncate_chars(final_answer_summary, self._answer_chars),
                status=status,
                key_id=draft.key_id,
                created_at=draft.created_at,
            )
            del self._drafts[handle.correlation_id]
            handle.record = record
            self._remember(handle.correlation_id)
        logger.info(
            "turn_sealed",
            correlation_id=handle.correlation_id,
            status=status.value,
            tool_calls=len(record.tool_calls),
        )
        return record

    def _draft_for(self, handle: TurnHandle) -> _TurnDraft:
        if handle.sealed:
            raise AlreadySealedError(
                f"Turn '{handle.correlation_id}' is already sealed",
                correlation_id=handle.correlation_id,
            )
        draft = self._drafts.get(handle.correlation_id)
        if draft is None:
            raise AlreadySealedError(
                f"Turn '{handle.correlation_id}' is not in progress",
                correlation_id=handle.correlation_id,
            )
        return draft

    def _remember(self, correlation_id: str) -> None:
        if self._remembered <= 0:
            return
        self._sealed_order.append(correlation_id)
        self._sealed_ids.add(correlation_id)
        while len(self._sealed_order) > self._remembered:
            self._sealed_ids.discard(self._sealed_order.popleft())


__all__ = ["TurnHandle", "TurnRecorder"]
