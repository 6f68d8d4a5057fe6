from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from ..core import metrics
from ..core.config import Settings
from ..core.exceptions import PolicyError, ToolArgumentError, UnknownAgentError
from ..core.logging import get_logger
from ..core.security import CORRELATION_HEADER
from ..orchestration.tool_policy import PolicyStore, normalize_tool_name
from ..schemas.agents import (
    AgentEndpoint,
    AgentFailure,
    AgentResponsePayload,
    AgentSuccess,
    FailureKind,
    SourceRef,
    ToolCallRequest,
)
from ..schemas.policy import ApiKey
from ..tools.validation import ToolArgumentValidator
from ..utils.text import truncate_bytes, truncate_chars, utf8_len

logger = get_logger(name=__name__)

_ANOMALY_URL_CHARS = 200
_MAX_ANOMALIES = 20


class AgentGateway:
    """Dispatch tool calls to registered agents under the policy store's rules.

    Every invocation passes the key-scope check before the endpoint is even
    resolved, issues at most one outbound request and never retries. Timeouts
    and transport problems come back as :class:`AgentFailure` values; only
    policy and configuration errors are raised.
    """

    def __init__(
        self,
        policy: PolicyStore,
        *,
        validator: ToolArgumentValidator,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._policy = policy
        self._validator = validator
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        policy: PolicyStore,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> "AgentGateway":
        validator = ToolArgumentValidator(max_string_length=settings.tools.max_argument_chars)
        return cls(policy, validator=validator, client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def invoke(self, request: ToolCallRequest, api_key: ApiKey) -> AgentSuccess | AgentFailure:
        tool = normalize_tool_name(request.tool_name)
        if not self._policy.check_key_scope(api_key, tool):
            metrics.increment_policy_denial(tool=tool)
            metrics.record_tool_call(tool=tool, outcome="policy_denied")
            logger.warning(
                "policy_denied",
                correlation_id=request.correlation_id,
                key_id=api_key.key_id,
                tool=tool,
            )
            raise PolicyError("not authorized", correlation_id=request.correlation_id)

        endpoint = self._policy.resolve(tool)
        try:
            self._validator.validate(endpoint, request.arguments)
        except ToolArgumentError as exc:
            metrics.record_tool_call(tool=tool, outcome=FailureKind.INVALID_ARGUMENTS.value)
            logger.info(
                "tool_arguments_rejected",
                correlation_id=request.correlation_id,
                tool=tool,
                error=exc.message,
            )
            return AgentFailure(kind=FailureKind.INVALID_ARGUMENTS, message=exc.message)

        return await self._call(endpoint, request)

    async def _call(self, endpoint: AgentEndpoint, request: ToolCallRequest) -> AgentSuccess | AgentFailure:
        payload: dict[str, Any] = {
            "arguments": dict(request.arguments),
            "correlation_id": request.correlation_id,
        }
        headers = {CORRELATION_HEADER: request.correlation_id}
        start = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.post(
                    endpoint.invocation_target,
                    json=payload,
                    headers=headers,
                    timeout=endpoint.timeout_seconds,
                ),
                timeout=endpoint.timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._failure(
                endpoint,
                request,
                FailureKind.TIMEOUT,
                f"agent did not respond within {endpoint.timeout_seconds:g}s",
                start,
            )
        except httpx.RequestError as exc:
            return self._failure(endpoint, request, FailureKind.TRANSPORT, f"transport error: {exc}", start)

        if not response.is_success:
            return self._failure(
                endpoint,
                request,
                FailureKind.TRANSPORT,
                f"agent returned HTTP {response.status_code}",
                start,
            )
        try:
            body = AgentResponsePayload.model_validate(response.json())
        except (ValueError, ValidationError):
            return self._failure(
                endpoint,
                request,
                FailureKind.INVALID_RESPONSE,
                "agent returned a malformed response",
                start,
            )

        result = self._normalize(endpoint, request, body)
        latency = time.perf_counter() - start
        metrics.record_tool_call(tool=endpoint.name, outcome="success", latency=latency)
        logger.info(
            "agent_invoked",
            correlation_id=request.correlation_id,
            tool=endpoint.name,
            outcome="success",
            partial=result.partial,
            anomalies=len(result.anomalies),
            latency_ms=round(latency * 1000, 3),
        )
        return result

    def _normalize(
        self,
        endpoint: AgentEndpoint,
        request: ToolCallRequest,
        body: AgentResponsePayload,
    ) -> AgentSuccess:
        allowed: list[SourceRef] = []
        anomalies: list[str] = []
        rejected = 0
        for source in body.sources:
            if self._source_allowed(endpoint, source.url):
                allowed.append(source)
                continue
            rejected += 1
            if len(anomalies) < _MAX_ANOMALIES:
                anomalies.append(f"source_outside_allowlist:{truncate_chars(source.url, _ANOMALY_URL_CHARS)}")
        if rejected:
            metrics.increment_sources_rejected(agent=endpoint.name, count=rejected)
            logger.warning(
                "agent_source_rejected",
                correlation_id=request.correlation_id,
                agent=endpoint.name,
                rejected_count=rejected,
                rejected=anomalies,
            )
        if rejected > len(anomalies):
            anomalies.append(f"sources_outside_allowlist_omitted:{rejected - len(anomalies)}")

        summary, snippets, sources, partial = _fit_to_budget(
            body.summary, body.snippets, allowed, endpoint.max_result_bytes
        )
        if partial:
            logger.info(
                "agent_result_truncated",
                correlation_id=request.correlation_id,
                agent=endpoint.name,
                max_result_bytes=endpoint.max_result_bytes,
                sources_dropped=len(allowed) - len(sources),
            )
        return AgentSuccess(
            summary=summary,
            structured_snippets=snippets,
            sources=sources,
            partial=partial,
            anomalies=tuple(anomalies),
        )

    def _source_allowed(self, endpoint: AgentEndpoint, url: str) -> bool:
        try:
            return self._policy.is_destination_allowed(endpoint.name, url)
        except UnknownAgentError:
            # agent unregistered by a reload while the call was in flight
            return False

    def _failure(
        self,
        endpoint: AgentEndpoint,
        request: ToolCallRequest,
        kind: FailureKind,
        message: str,
        start: float,
    ) -> AgentFailure:
        latency = time.perf_counter() - start
        metrics.record_tool_call(tool=endpoint.name, outcome=kind.value, latency=latency)
        logger.warning(
            "agent_call_failed",
            correlation_id=request.correlation_id,
            tool=endpoint.name,
            kind=kind.value,
            error=message,
            latency_ms=round(latency * 1000, 3),
        )
        return AgentFailure(kind=kind, message=message)


def _fit_to_budget(
    summary: str,
    snippets: Sequence[str],
    sources: Sequence[SourceRef],
    limit: int,
) -> tuple[str, tuple[str, ...], tuple[SourceRef, ...], bool]:
    """Spend ``limit`` bytes on summary, then snippets, then whole sources."""
    remaining = limit
    partial = False
    if utf8_len(summary) > remaining:
        summary = truncate_bytes(summary, remaining)
        partial = True
    remaining -= utf8_len(summary)

    kept: list[str] = []
    for snippet in snippets:
        size = utf8_len(snippet)
        if size <= remaining:
            kept.append(snippet)
            remaining -= size
            continue
        partial = True
        clipped = truncate_bytes(snippet, remaining)
        if clipped:
            kept.append(clipped)
        remaining = 0
        break

    fitted: list[SourceRef] = []
    for source in sources:
        size = utf8_len(source.url) + utf8_len(source.title)
        if size > remaining:
            partial = True
            break
        fitted.append(source)
        remaining -= size
    return summary, tuple(kept), tuple(fitted), partial


__all__ = ["AgentGateway"]
