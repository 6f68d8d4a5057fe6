from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from ..core import metrics
from ..core.config import Settings
from ..core.exceptions import PolicyError, UnknownAgentError, UnknownToolError, UpstreamError
from ..core.logging import get_logger
from ..queue.manager import ScoringQueue
from ..schemas.agents import AgentFailure, AgentSuccess, FailureKind, ToolCallRequest
from ..schemas.policy import ApiKey
from ..schemas.turns import ChatMessage, TurnRecord, TurnStatus
from ..services.llm import ToolIntent, WorkerModel
from ..utils.text import summarize
from .recorder import TurnHandle, TurnRecorder
from .state import TOOL_LOOP_EXCEEDED, TurnOutcome, TurnState, can_transition
from .tool_policy import PolicyStore

if TYPE_CHECKING:
    from ..services.agent_gateway import AgentGateway

logger = get_logger(name=__name__)


def new_correlation_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"turn-{stamp}-{uuid.uuid4().hex[:12]}"


def tool_loop_note(limit: int) -> str:
    return f"[{TOOL_LOOP_EXCEEDED}] Stopped after {limit} tool round-trip(s) without a final answer."


@dataclass
class _TurnRun:
    handle: TurnHandle
    api_key: ApiKey
    messages: list[BaseMessage]
    tools: list[dict[str, Any]]
    state: TurnState = TurnState.RECEIVED
    round_trips: int = 0
    started_at: float = field(default_factory=time.perf_counter)

    @property
    def correlation_id(self) -> str:
        return self.handle.correlation_id

    def move(self, target: TurnState) -> None:
        if not can_transition(self.state, target):
            raise RuntimeError(f"Illegal turn transition {self.state.value} -> {target.value}")
        logger.debug(
            "turn_state_changed",
            correlation_id=self.correlation_id,
            previous=self.state.value,
            state=target.value,
        )
        self.state = target


class Orchestrator:
    """Drive one conversation turn from prompt to sealed record.

    The worker model never reaches an agent directly: every tool intent it
    emits goes through the agent gateway under the caller's key. Agent
    failures are fed back to the worker as tool results. A worker failure is
    fatal to the turn, yet the turn is still sealed and scored before the
    error reaches the caller.
    """

    def __init__(
        self,
        *,
        policy: PolicyStore,
        gateway: AgentGateway,
        worker: WorkerModel,
        recorder: TurnRecorder,
        scoring: ScoringQueue,
        max_tool_round_trips: int = 5,
        prompt_summary_chars: int = 2_000,
        answer_summary_chars: int = 2_000,
        redact_summaries: bool = True,
    ) -> None:
        self.policy = policy
        self.gateway = gateway
        self.worker = worker
        self.recorder = recorder
        self.scoring = scoring
        self.max_tool_round_trips = max_tool_round_trips
        self._prompt_chars = prompt_summary_chars
        self._answer_chars = answer_summary_chars
        self._redact = redact_summaries
        self._inflight: set[asyncio.Task[TurnOutcome]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        policy: PolicyStore,
        gateway: AgentGateway,
        worker: WorkerModel,
        recorder: TurnRecorder,
        scoring: ScoringQueue,
    ) -> "Orchestrator":
        options = settings.orchestrator
        return cls(
            policy=policy,
            gateway=gateway,
            worker=worker,
            recorder=recorder,
            scoring=scoring,
            max_tool_round_trips=options.max_tool_round_trips,
            prompt_summary_chars=options.prompt_summary_chars,
            answer_summary_chars=options.answer_summary_chars,
            redact_summaries=options.redact_summaries,
        )

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def authorize(self, token: str | None) -> ApiKey:
        """Resolve a client token; unknown and revoked keys never start a turn."""
        api_key = self.policy.authenticate(token)
        if api_key is None:
            logger.warning("api_key_rejected", reason="unknown")
            raise PolicyError("invalid api key")
        if api_key.revoked:
            logger.warning("api_key_rejected", reason="revoked", key_id=api_key.key_id)
            raise PolicyError("api key revoked")
        return api_key

    async def handle_turn(
        self,
        prompt: str,
        api_key: ApiKey,
        *,
        history: Sequence[ChatMessage] = (),
        correlation_id: str | None = None,
    ) -> TurnOutcome:
        """Run a turn in its own task so a departing caller cannot cut bookkeeping short."""
        task = asyncio.create_task(
            self.run_turn(prompt, api_key, history=history, correlation_id=correlation_id),
            name=f"turn-{correlation_id or 'new'}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._forget)
        return await asyncio.shield(task)

    def _forget(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # the caller may have left; mark the failure as retrieved
        if not task.cancelled() and task.exception() is not None:
            logger.debug("turn_task_failed", task=task.get_name(), error=type(task.exception()).__name__)

    async def drain(self) -> None:
        """Wait for turns whose callers may already be gone."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def run_turn(
        self,
        prompt: str,
        api_key: ApiKey,
        *,
        history: Sequence[ChatMessage] = (),
        correlation_id: str | None = None,
    ) -> TurnOutcome:
        correlation_id = correlation_id or new_correlation_id()
        handle = self.recorder.begin(
            correlation_id,
            summarize(prompt, self._prompt_chars, redact_sensitive=self._redact),
            key_id=api_key.key_id,
        )
        metrics.mark_turn_started()
        run = _TurnRun(
            handle=handle,
            api_key=api_key,
            messages=self._initial_messages(prompt, history),
            tools=[endpoint.tool_spec() for endpoint in self.policy.available_tools(api_key)],
        )
        logger.info(
            "turn_started",
            correlation_id=correlation_id,
            key_id=api_key.key_id,
            tools=[spec["function"]["name"] for spec in run.tools],
            history=len(history),
        )

        try:
            answer, status = await self._converse(run)
        except Exception as exc:
            if not handle.sealed:
                if run.state is not TurnState.FINALIZED:
                    run.move(TurnState.FINALIZED)
                self._finish(run, "", TurnStatus.FAILED)
            if isinstance(exc, UpstreamError):
                logger.error("turn_failed", correlation_id=correlation_id, error=exc.message)
                raise UpstreamError(exc.message, correlation_id=correlation_id) from exc
            logger.exception("turn_aborted", correlation_id=correlation_id, error=str(exc))
            raise

        record = self._finish(run, answer, status)
        return TurnOutcome(
            correlation_id=correlation_id,
            answer=answer,
            status=status,
            round_trips=run.round_trips,
            record=record,
        )

    async def _converse(self, run: _TurnRun) -> tuple[str, TurnStatus]:
        while True:
            run.move(TurnState.AWAITING_WORKER)
            reply = await self.worker.complete(run.messages, tools=run.tools)
            if not reply.wants_tools:
                run.move(TurnState.FINALIZED)
                return reply.content, TurnStatus.COMPLETED

            run.move(TurnState.TOOL_REQUESTED)
            if run.round_trips >= self.max_tool_round_trips:
                run.move(TurnState.FINALIZED)
                metrics.increment_tool_loop_exceeded()
                logger.warning(
                    "tool_loop_exceeded",
                    correlation_id=run.correlation_id,
                    round_trips=run.round_trips,
                    limit=self.max_tool_round_trips,
                    requested=[intent.name for intent in reply.tool_calls],
                )
                note = tool_loop_note(self.max_tool_round_trips)
                partial = reply.content.strip()
                return (f"{partial}\n\n{note}" if partial else note), TurnStatus.TOOL_LOOP_EXCEEDED

            run.round_trips += 1
            run.move(TurnState.AWAITING_AGENT)
            run.messages.append(reply.message)
            for intent in reply.tool_calls:
                result = await self._dispatch(run, intent)
                run.messages.append(ToolMessage(content=result.as_tool_message(), tool_call_id=intent.call_id))

    async def _dispatch(self, run: _TurnRun, intent: ToolIntent) -> AgentSuccess | AgentFailure:
        request = ToolCallRequest(
            tool_name=intent.name,
            arguments=dict(intent.arguments),
            correlation_id=run.correlation_id,
            call_id=intent.call_id,
        )
        logger.info(
            "tool_requested",
            correlation_id=run.correlation_id,
            tool=intent.name,
            round_trip=run.round_trips,
        )
        try:
            result: AgentSuccess | AgentFailure = await self.gateway.invoke(request, run.api_key)
        except PolicyError as exc:
            result = AgentFailure(kind=FailureKind.POLICY_DENIED, message=exc.message)
        except (UnknownToolError, UnknownAgentError) as exc:
            metrics.record_tool_call(tool=intent.name, outcome=FailureKind.UNKNOWN_TOOL.value)
            logger.warning("unknown_tool_requested", correlation_id=run.correlation_id, tool=intent.name)
            result = AgentFailure(kind=FailureKind.UNKNOWN_TOOL, message=exc.message)
        self.recorder.record_tool_call(run.handle, request, result)
        return result

    def _finish(self, run: _TurnRun, answer: str, status: TurnStatus) -> TurnRecord:
        record = self.recorder.seal(
            run.handle,
            summarize(answer, self._answer_chars, redact_sensitive=self._redact),
            status=status,
        )
        run.move(TurnState.SEALED)
        latency = time.perf_counter() - run.started_at
        metrics.mark_turn_sealed()
        metrics.record_turn(status=status.value, latency=latency)
        self.scoring.submit(record)
        logger.info(
            "turn_finalized",
            correlation_id=run.correlation_id,
            status=status.value,
            round_trips=run.round_trips,
            tool_calls=len(record.tool_calls),
            latency_ms=round(latency * 1000, 3),
        )
        return record

    def _initial_messages(self, prompt: str, history: Sequence[ChatMessage]) -> list[BaseMessage]:
        messages: list[BaseMessage] = [SystemMessage(content=self.worker.system_prompt)]
        for item in history:
            if item.role == "assistant":
                messages.append(AIMessage(content=item.content))
            else:
                messages.append(HumanMessage(content=item.content))
        messages.append(HumanMessage(content=prompt))
        return messages


__all__ = ["Orchestrator", "new_correlation_id", "tool_loop_note"]
