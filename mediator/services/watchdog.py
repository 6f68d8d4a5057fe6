from __future__ import annotations

import asyncio
import json
import time
from typing import Any

from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from ..core import metrics
from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.agents import FailureKind
from ..schemas.turns import TurnRecord
from ..schemas.verdicts import RiskLevel, RiskReason, WatchdogVerdict, WatchdogVerdictPayload
from ..utils.text import truncate_chars
from .llm import ChatModelFactory, extract_content

logger = get_logger(name=__name__)


class WatchdogResponseError(ValueError):
    """Raised when the scoring model's reply cannot be read as a verdict."""


def local_reasons(record: TurnRecord) -> frozenset[RiskReason]:
    """Reasons already known to the orchestrator, merged into every verdict."""
    reasons: set[RiskReason] = set()
    for entry in record.tool_calls:
        result = entry.result
        if result.ok and result.anomalies:
            reasons.add(RiskReason.AGENT_ANOMALY)
        elif not result.ok and result.kind is FailureKind.POLICY_DENIED:
            reasons.add(RiskReason.OUT_OF_POLICY)
    return frozenset(reasons)


class WatchdogClient:
    """Score sealed turns with the secondary model.

    :meth:`score` always returns a verdict. Timeouts, transport errors and
    unreadable replies become the ``unavailable`` sentinel and are logged here;
    nothing propagates to the caller.
    """

    def __init__(
        self,
        client: Any,
        *,
        model: str,
        system_prompt: str,
        timeout_seconds: float = 3.0,
        summary_chars: int = 400,
        notes_chars: int = 500,
    ) -> None:
        self._client = client
        self.model = model
        self._system_prompt = system_prompt
        self._timeout = timeout_seconds
        self._summary_chars = summary_chars
        self._notes_chars = notes_chars

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any | None = None) -> "WatchdogClient":
        watchdog = settings.watchdog
        return cls(
            client or ChatModelFactory.for_watchdog(watchdog),
            model=watchdog.model,
            system_prompt=watchdog.system_prompt,
            timeout_seconds=watchdog.timeout_seconds,
            summary_chars=watchdog.summary_chars,
            notes_chars=watchdog.notes_chars,
        )

    def compact(self, record: TurnRecord) -> dict[str, Any]:
        failures = [
            f"{entry.request.tool_name}:{entry.result.kind.value}"
            for entry in record.tool_calls
            if not entry.result.ok
        ]
        return {
            "correlation_id": record.correlation_id,
            "prompt_summary": truncate_chars(record.prompt_summary, self._summary_chars),
            "answer_summary": truncate_chars(record.final_answer_summary, self._summary_chars),
            "tools_used": record.tools_used,
            "tool_failures": failures,
            "agent_anomalies": len(record.anomalies),
            "status": record.status.value,
        }

    async def score(self, record: TurnRecord) -> WatchdogVerdict:
        known = local_reasons(record)
        messages = [
            SystemMessage(content=self._system_prompt),
            HumanMessage(content=json.dumps(self.compact(record), ensure_ascii=False)),
        ]
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._client.ainvoke(messages), timeout=self._timeout)
            verdict = self._parse(record.correlation_id, extract_content(result), known)
        except asyncio.TimeoutError:
            logger.error(
                "watchdog_unavailable",
                correlation_id=record.correlation_id,
                reason="timeout",
                timeout_seconds=self._timeout,
            )
            return WatchdogVerdict.unavailable_for(
                record.correlation_id,
                notes=f"watchdog timed out after {self._timeout:g}s",
                reasons=known,
            )
        except Exception as exc:
            logger.error(
                "watchdog_unavailable",
                correlation_id=record.correlation_id,
                reason=type(exc).__name__,
                error=str(exc),
            )
            return WatchdogVerdict.unavailable_for(
                record.correlation_id,
                notes=truncate_chars(f"watchdog error: {exc}", self._notes_chars),
                reasons=known,
            )
        finally:
            metrics.observe_watchdog_latency(time.perf_counter() - start)

        logger.info(
            "watchdog_verdict",
            correlation_id=record.correlation_id,
            risk_level=verdict.risk_level.value,
            reasons=sorted(reason.value for reason in verdict.reasons),
        )
        return verdict

    def _parse(self, correlation_id: str, content: str, known: frozenset[RiskReason]) -> WatchdogVerdict:
        if not content.strip():
            raise WatchdogResponseError("empty verdict")
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as exc:
            raise WatchdogResponseError("verdict is not JSON") from exc
        if not isinstance(raw, dict):
            raise WatchdogResponseError("verdict is not a JSON object")
        if isinstance(raw.get("risk_level"), str):
            raw["risk_level"] = raw["risk_level"].strip().lower()
        try:
            payload = WatchdogVerdictPayload.model_validate(raw)
        except ValidationError as exc:
            raise WatchdogResponseError("verdict failed validation") from exc

        reasons = set(known)
        for tag in payload.reasons:
            try:
                reasons.add(RiskReason(str(tag).strip().lower()))
            except ValueError:
                logger.debug("watchdog_reason_ignored", correlation_id=correlation_id, reason=tag)
        return WatchdogVerdict(
            correlation_id=correlation_id,
            risk_level=RiskLevel(payload.risk_level),
            reasons=frozenset(reasons),
            notes=truncate_chars(payload.notes, self._notes_chars),
        )


__all__ = ["WatchdogClient", "WatchdogResponseError", "local_reasons"]
