from __future__ import annotations

import asyncio
import gc
from typing import Any

import httpx
import pytest
from langchain_core.messages import AIMessage, ToolMessage

from mediator.core.exceptions import PolicyError, UpstreamError
from mediator.orchestration.state import TOOL_LOOP_EXCEEDED
from mediator.schemas.agents import FailureKind
from mediator.schemas.turns import ChatMessage, TurnStatus
from mediator.schemas.verdicts import RiskReason
from tests.helpers.stubs import (
    AGENT_URL,
    CHAT_TOKEN,
    RESEARCH_TOKEN,
    RecordingAgent,
    ScriptedChatModel,
    make_runtime,
    make_settings,
    tool_call_message,
)


def _policy(timeout_seconds: float = 8.0) -> dict[str, Any]:
    return {
        "agents": [
            {
                "name": "internet_research",
                "invocation_target": AGENT_URL,
                "allowed_destinations": ["https://en.wikipedia.org/wiki/"],
                "timeout_seconds": timeout_seconds,
            }
        ],
        "api_keys": [
            {"key_id": "research-key", "token": RESEARCH_TOKEN, "scope": ["internet_research"]},
            {"key_id": "chat-key", "token": CHAT_TOKEN, "scope": []},
        ],
    }


@pytest.mark.asyncio
async def test_tool_loop_stops_after_exact_bound() -> None:
    worker = ScriptedChatModel(default=tool_call_message("internet_research", {"query": "ping"}))
    agent = RecordingAgent()
    runtime, sink = make_runtime(
        settings=make_settings(orchestrator={"max_tool_round_trips": 3}),
        worker=worker,
        agent=agent,
    )
    orchestrator = runtime.orchestrator
    await runtime.start()

    outcome = await orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN))
    await runtime.stop()

    assert len(agent.requests) == 3
    assert len(worker.calls) == 4
    assert outcome.round_trips == 3
    assert outcome.status is TurnStatus.TOOL_LOOP_EXCEEDED
    assert outcome.markers == [TOOL_LOOP_EXCEEDED]
    assert TOOL_LOOP_EXCEEDED in outcome.answer
    assert len(outcome.record.tool_calls) == 3
    assert outcome.record.status is TurnStatus.TOOL_LOOP_EXCEEDED
    assert len(sink.for_correlation(outcome.correlation_id)) == 1


@pytest.mark.asyncio
async def test_zero_round_trips_finalizes_on_first_tool_request() -> None:
    worker = ScriptedChatModel(default=tool_call_message("internet_research", {"query": "ping"}))
    agent = RecordingAgent()
    runtime, _ = make_runtime(
        settings=make_settings(orchestrator={"max_tool_round_trips": 0}),
        worker=worker,
        agent=agent,
    )
    orchestrator = runtime.orchestrator

    outcome = await orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN))

    assert agent.requests == []
    assert len(worker.calls) == 1
    assert outcome.status is TurnStatus.TOOL_LOOP_EXCEEDED
    await runtime.stop()


@pytest.mark.asyncio
async def test_ping_with_empty_scope_is_denied_and_worker_falls_back() -> None:
    worker = ScriptedChatModel(
        [
            tool_call_message("internet_research", {"query": "ping"}, call_id="call_ping"),
            AIMessage(content="pong - I could not look that up, but here is what I know."),
        ]
    )
    agent = RecordingAgent()
    runtime, sink = make_runtime(worker=worker, agent=agent)
    orchestrator = runtime.orchestrator
    await runtime.start()

    outcome = await orchestrator.handle_turn("ping", orchestrator.authorize(CHAT_TOKEN))
    await runtime.stop()

    assert agent.requests == []
    assert worker.bound_tools == []
    tool_message = worker.calls[1][-1]
    assert isinstance(tool_message, ToolMessage)
    assert tool_message.content == "tool call failed: not authorized"
    assert tool_message.tool_call_id == "call_ping"
    assert outcome.status is TurnStatus.COMPLETED
    assert outcome.answer.startswith("pong")
    [entry] = outcome.record.tool_calls
    assert entry.result.kind is FailureKind.POLICY_DENIED

    [audit] = sink.for_correlation(outcome.correlation_id)
    assert RiskReason.OUT_OF_POLICY in audit.verdict.reasons


@pytest.mark.asyncio
async def test_agent_timeout_is_fed_back_without_retry() -> None:
    worker = ScriptedChatModel(
        [
            tool_call_message("internet_research", {"query": "ping"}),
            AIMessage(content="The research agent timed out, sorry."),
        ]
    )
    agent = RecordingAgent(delay=1.0)
    runtime, _ = make_runtime(
        settings=make_settings(policy=_policy(timeout_seconds=0.05)),
        worker=worker,
        agent=agent,
    )
    orchestrator = runtime.orchestrator

    outcome = await orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN))

    assert len(agent.requests) == 1
    [entry] = outcome.record.tool_calls
    assert entry.result.kind is FailureKind.TIMEOUT
    assert worker.calls[1][-1].content == "tool call failed: agent did not respond within 0.05s"
    assert outcome.status is TurnStatus.COMPLETED
    await runtime.stop()


@pytest.mark.asyncio
async def test_agent_result_reaches_worker_and_correlation_id_propagates() -> None:
    worker = ScriptedChatModel(
        [
            tool_call_message("internet_research", {"query": "ping"}),
            AIMessage(content="Ping checks reachability."),
        ]
    )
    agent = RecordingAgent(
        lambda request: httpx.Response(
            200,
            json={
                "summary": "Ping measures round-trip time.",
                "sources": [
                    {"url": "https://en.wikipedia.org/wiki/Ping_(networking_utility)"},
                    {"url": "https://tracker.example/collect"},
                ],
            },
        )
    )
    runtime, _ = make_runtime(worker=worker, agent=agent)
    orchestrator = runtime.orchestrator

    outcome = await orchestrator.handle_turn("what is ping?", orchestrator.authorize(RESEARCH_TOKEN))

    assert agent.requests[0].headers["X-Correlation-Id"] == outcome.correlation_id
    assert agent.payloads()[0]["correlation_id"] == outcome.correlation_id
    fed_back = worker.calls[1][-1].content
    assert "Ping measures round-trip time." in fed_back
    assert "tracker.example" not in fed_back
    [entry] = outcome.record.tool_calls
    assert [source.url for source in entry.result.sources] == [
        "https://en.wikipedia.org/wiki/Ping_(networking_utility)"
    ]
    assert worker.bound_tools[0][0]["function"]["name"] == "internet_research"
    await runtime.stop()


@pytest.mark.asyncio
async def test_embedded_json_intent_is_dispatched() -> None:
    worker = ScriptedChatModel(
        [
            AIMessage(content='```json\n{"tool": "internet_research", "arguments": {"query": "ping"}}\n```'),
            AIMessage(content="done"),
        ]
    )
    agent = RecordingAgent()
    runtime, _ = make_runtime(worker=worker, agent=agent)
    orchestrator = runtime.orchestrator

    outcome = await orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN))

    assert len(agent.requests) == 1
    assert outcome.answer == "done"
    assert outcome.round_trips == 1
    await runtime.stop()


@pytest.mark.asyncio
async def test_unknown_tool_is_recovered_locally() -> None:
    settings = make_settings(
        policy={
            "agents": _policy()["agents"],
            "api_keys": [{"key_id": "wide", "token": "tok-wide", "scope": ["internet_research", "shell"]}],
        }
    )
    worker = ScriptedChatModel([tool_call_message("shell", {"query": "rm -rf /"}), AIMessage(content="ok")])
    runtime, _ = make_runtime(settings=settings, worker=worker)
    orchestrator = runtime.orchestrator

    outcome = await orchestrator.handle_turn("clean up", orchestrator.authorize("tok-wide"))

    [entry] = outcome.record.tool_calls
    assert entry.result.kind is FailureKind.UNKNOWN_TOOL
    assert outcome.status is TurnStatus.COMPLETED
    await runtime.stop()


@pytest.mark.asyncio
async def test_worker_failure_is_fatal_but_still_sealed_and_scored() -> None:
    worker = ScriptedChatModel(error=RuntimeError("model server exploded"))
    runtime, sink = make_runtime(worker=worker)
    orchestrator = runtime.orchestrator
    await runtime.start()

    with pytest.raises(UpstreamError) as excinfo:
        await orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN))
    await runtime.stop()

    correlation_id = excinfo.value.correlation_id
    assert correlation_id
    [entry] = sink.for_correlation(correlation_id)
    assert entry.turn.status is TurnStatus.FAILED
    assert runtime.recorder.active_count == 0


@pytest.mark.asyncio
async def test_unknown_and_revoked_keys_never_start_a_turn() -> None:
    worker = ScriptedChatModel()
    runtime, _ = make_runtime(worker=worker)
    orchestrator = runtime.orchestrator

    with pytest.raises(PolicyError):
        orchestrator.authorize("nope")
    with pytest.raises(PolicyError):
        orchestrator.authorize(None)
    runtime.policy.revoke_key("research-key")
    with pytest.raises(PolicyError) as excinfo:
        orchestrator.authorize(RESEARCH_TOKEN)

    assert excinfo.value.message == "api key revoked"
    assert worker.calls == []
    await runtime.stop()


@pytest.mark.asyncio
async def test_caller_cancellation_does_not_abort_bookkeeping() -> None:
    worker = ScriptedChatModel([AIMessage(content="late answer")], delay=0.1)
    runtime, sink = make_runtime(worker=worker)
    orchestrator = runtime.orchestrator
    await runtime.start()

    caller = asyncio.create_task(orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN)))
    await asyncio.sleep(0.02)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    await orchestrator.drain()
    await runtime.stop()

    assert runtime.recorder.active_count == 0
    assert len(sink.entries) == 1
    assert sink.entries[0].turn.final_answer_summary == "late answer"


@pytest.mark.asyncio
async def test_history_and_redaction() -> None:
    worker = ScriptedChatModel([AIMessage(content="Mail me at ops@example.com")])
    runtime, _ = make_runtime(worker=worker)
    orchestrator = runtime.orchestrator
    history = [ChatMessage(role="user", content="hi"), ChatMessage(role="assistant", content="hello")]

    outcome = await orchestrator.handle_turn(
        "my key is sk-abcdefghijklmnopqrstuv",
        orchestrator.authorize(RESEARCH_TOKEN),
        history=history,
    )

    sent = worker.calls[0]
    assert [message.content for message in sent[1:]] == ["hi", "hello", "my key is sk-abcdefghijklmnopqrstuv"]
    assert "sk-abcdefghijklmnopqrstuv" not in outcome.record.prompt_summary
    assert "[REDACTED]" in outcome.record.prompt_summary
    assert "ops@example.com" not in outcome.record.final_answer_summary
    assert outcome.answer == "Mail me at ops@example.com"
    await runtime.stop()


@pytest.mark.asyncio
async def test_failure_after_caller_left_is_not_reported_as_unretrieved() -> None:
    loop = asyncio.get_running_loop()
    reported: list[dict[str, Any]] = []
    previous = loop.get_exception_handler()
    loop.set_exception_handler(lambda _loop, context: reported.append(context))
    worker = ScriptedChatModel(error=RuntimeError("model server exploded"), delay=0.05)
    runtime, sink = make_runtime(worker=worker)
    orchestrator = runtime.orchestrator
    await runtime.start()
    try:
        caller = asyncio.create_task(orchestrator.handle_turn("ping", orchestrator.authorize(RESEARCH_TOKEN)))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await asyncio.sleep(0.1)
        await orchestrator.drain()
        await runtime.stop()
        gc.collect()
        await asyncio.sleep(0)
    finally:
        loop.set_exception_handler(previous)

    assert orchestrator.inflight == 0
    assert [entry.turn.status for entry in sink.entries] == [TurnStatus.FAILED]
    assert not any("never retrieved" in context.get("message", "") for context in reported)
