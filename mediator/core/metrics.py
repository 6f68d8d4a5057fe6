from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TURNS_TOTAL = Counter(
    "mediator_turns_total",
    "Conversation turns by final status",
    labelnames=("status",),
)

TURN_LATENCY_SECONDS = Histogram(
    "mediator_turn_latency_seconds",
    "Latency of the user-visible path of a turn",
    labelnames=("status",),
    buckets=(0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

TURNS_ACTIVE = Gauge(
    "mediator_turns_active",
    "Turns currently between Received and Sealed",
)

TOOL_CALLS_TOTAL = Counter(
    "mediator_tool_calls_total",
    "Agent gateway invocations grouped by tool and outcome",
    labelnames=("tool", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "mediator_tool_latency_seconds",
    "Latency of the outbound agent call",
    labelnames=("tool",),
)

POLICY_DENIALS_TOTAL = Counter(
    "mediator_policy_denials_total",
    "Tool dispatches rejected by the API key scope check",
    labelnames=("tool",),
)

SOURCES_REJECTED_TOTAL = Counter(
    "mediator_agent_sources_rejected_total",
    "Agent result sources stripped because they fall outside the agent allowlist",
    labelnames=("agent",),
)

TOOL_LOOP_EXCEEDED_TOTAL = Counter(
    "mediator_tool_loop_exceeded_total",
    "Turns finalized early because the tool round-trip bound was reached",
)

WATCHDOG_VERDICTS_TOTAL = Counter(
    "mediator_watchdog_verdicts_total",
    "Persisted watchdog verdicts grouped by risk level and availability",
    labelnames=("risk_level", "unavailable"),
)

WATCHDOG_LATENCY_SECONDS = Histogram(
    "mediator_watchdog_latency_seconds",
    "Latency of watchdog scoring calls",
    buckets=(0.1, 0.25, 0.5, 1, 2, 3, 5, 10, float("inf")),
)

SCORING_QUEUE_DEPTH = Gauge(
    "mediator_scoring_queue_depth",
    "Sealed turns waiting for watchdog scoring",
)


def record_turn(*, status: str, latency: float) -> None:
    TURNS_TOTAL.labels(status=status).inc()
    TURN_LATENCY_SECONDS.labels(status=status).observe(latency)


def mark_turn_started() -> None:
    TURNS_ACTIVE.inc()


def mark_turn_sealed() -> None:
    TURNS_ACTIVE.dec()


def record_tool_call(*, tool: str, outcome: str, latency: float | None = None) -> None:
    TOOL_CALLS_TOTAL.labels(tool=tool, outcome=outcome).inc()
    if latency is not None:
        TOOL_LATENCY_SECONDS.labels(tool=tool).observe(latency)


def increment_policy_denial(*, tool: str) -> None:
    POLICY_DENIALS_TOTAL.labels(tool=tool).inc()


def increment_sources_rejected(*, agent: str, count: int = 1) -> None:
    if count > 0:
        SOURCES_REJECTED_TOTAL.labels(agent=agent).inc(count)


def increment_tool_loop_exceeded() -> None:
    TOOL_LOOP_EXCEEDED_TOTAL.inc()


def record_watchdog_verdict(*, risk_level: str, unavailable: bool) -> None:
    WATCHDOG_VERDICTS_TOTAL.labels(risk_level=risk_level, unavailable=str(unavailable).lower()).inc()


def observe_watchdog_latency(latency: float) -> None:
    WATCHDOG_LATENCY_SECONDS.observe(latency)


def set_scoring_queue_depth(depth: int) -> None:
    SCORING_QUEUE_DEPTH.set(max(0, depth))


__all__ = [
    "increment_policy_denial",
    "increment_sources_rejected",
    "increment_tool_loop_exceeded",
    "mark_turn_sealed",
    "mark_turn_started",
    "observe_watchdog_latency",
    "record_tool_call",
    "record_turn",
    "record_watchdog_verdict",
    "set_scoring_queue_depth",
]
