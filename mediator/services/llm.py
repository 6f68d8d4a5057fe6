from __future__ import annotations

import asyncio
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Sequence

from langchain_core.messages import AIMessage, BaseMessage
from langchain_ollama import ChatOllama

from ..core.config import Settings, WatchdogSettings, WorkerModelSettings
from ..core.exceptions import UpstreamError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)
_INTENT_NAME_KEYS = ("tool", "tool_name", "toolName", "name")


def _build_base_url(host: str, port: int) -> str:
    host = host.rstrip("/")
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host
    return f"{host}:{port}"


class ChatModelFactory:
    """Build and cache LangChain chat clients for the Ollama-served models."""

    _client_cache: ClassVar[dict[str, Any]] = {}

    @classmethod
    def get(
        cls,
        *,
        host: str,
        port: int,
        model: str,
        temperature: float,
        response_format: str | None = None,
    ) -> Any:
        cache_key = f"{host}:{port}:{model}:{temperature}:{response_format or ''}"
        cached = cls._client_cache.get(cache_key)
        if cached is None:
            options: dict[str, Any] = {
                "model": model,
                "base_url": _build_base_url(host, port),
                "temperature": temperature,
            }
            if response_format:
                options["format"] = response_format
            cached = ChatOllama(**options)
            cls._client_cache[cache_key] = cached
        return cached

    @classmethod
    def for_worker(cls, settings: WorkerModelSettings) -> Any:
        return cls.get(
            host=settings.host,
            port=settings.port,
            model=settings.model,
            temperature=settings.temperature,
        )

    @classmethod
    def for_watchdog(cls, settings: WatchdogSettings) -> Any:
        return cls.get(
            host=settings.host,
            port=settings.port,
            model=settings.model,
            temperature=0.0,
            response_format="json",
        )


@dataclass(frozen=True, slots=True)
class ToolIntent:
    name: str
    arguments: Mapping[str, Any]
    call_id: str


@dataclass(slots=True)
class WorkerReply:
    content: str
    message: AIMessage
    tool_calls: list[ToolIntent] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class WorkerModel:
    """Client for the primary model; one remote call per :meth:`complete`, no retries."""

    def __init__(self, client: Any, *, model: str, system_prompt: str, timeout_seconds: float) -> None:
        self._client = client
        self.model = model
        self.system_prompt = system_prompt
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any | None = None) -> "WorkerModel":
        worker = settings.worker
        return cls(
            client or ChatModelFactory.for_worker(worker),
            model=worker.model,
            system_prompt=worker.system_prompt,
            timeout_seconds=worker.timeout_seconds,
        )

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        *,
        tools: Sequence[dict[str, Any]] = (),
    ) -> WorkerReply:
        runnable = self._client.bind_tools(list(tools)) if tools else self._client
        try:
            result = await asyncio.wait_for(runnable.ainvoke(list(messages)), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.error("worker_model_timeout", model=self.model, timeout_seconds=self._timeout)
            raise UpstreamError(f"worker model did not answer within {self._timeout:g}s") from exc
        except Exception as exc:
            logger.error("worker_model_failed", model=self.model, error=str(exc))
            raise UpstreamError(f"worker model call failed: {exc}") from exc
        return parse_worker_reply(result)


def parse_worker_reply(result: Any) -> WorkerReply:
    content = extract_content(result)
    intents: list[ToolIntent] = []
    for call in getattr(result, "tool_calls", None) or []:
        name = call.get("name") if isinstance(call, Mapping) else None
        if not name:
            continue
        arguments = call.get("args")
        intents.append(
            ToolIntent(
                name=str(name),
                arguments=arguments if isinstance(arguments, Mapping) else {},
                call_id=str(call.get("id") or _new_call_id()),
            )
        )
    if intents and isinstance(result, AIMessage):
        return WorkerReply(content=content, message=result, tool_calls=intents)
    if intents:
        return WorkerReply(content=content, message=_tool_message(content, intents), tool_calls=intents)

    embedded = parse_embedded_intent(content)
    if embedded is not None:
        return WorkerReply(content="", message=_tool_message("", [embedded]), tool_calls=[embedded])
    message = result if isinstance(result, AIMessage) else AIMessage(content=content)
    return WorkerReply(content=content, message=message)


def parse_embedded_intent(content: str) -> ToolIntent | None:
    """Recognise a bare JSON tool request in models without native tool calling."""
    text = content.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1).strip()
    if not (text.startswith("{") and text.endswith("}")):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    name = next((payload[key] for key in _INTENT_NAME_KEYS if isinstance(payload.get(key), str)), None)
    arguments = payload.get("arguments", payload.get("args"))
    if not name or not isinstance(arguments, dict):
        return None
    return ToolIntent(name=name, arguments=arguments, call_id=_new_call_id())


def _tool_message(content: str, intents: Sequence[ToolIntent]) -> AIMessage:
    return AIMessage(
        content=content,
        tool_calls=[
            {"name": intent.name, "args": dict(intent.arguments), "id": intent.call_id}
            for intent in intents
        ],
    )


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def extract_content(result: Any) -> str:
    content = getattr(result, "content", result)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return " ".join(part for part in parts if part)
    return "" if content is None else str(content)


__all__ = [
    "ChatModelFactory",
    "ToolIntent",
    "extract_content",
    "WorkerModel",
    "WorkerReply",
    "parse_embedded_intent",
    "parse_worker_reply",
]
