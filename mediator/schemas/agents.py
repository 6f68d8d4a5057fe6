from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    INVALID_RESPONSE = "invalid_response"
    INVALID_ARGUMENTS = "invalid_arguments"
    POLICY_DENIED = "policy_denied"
    UNKNOWN_TOOL = "unknown_tool"


class FrozenArguments(dict):
    """Read-only dict holding tool-call arguments; nested containers are frozen as well."""

    __slots__ = ()

    def _read_only(self, *args: Any, **kwargs: Any) -> None:
        raise TypeError("tool call arguments are read-only")

    __setitem__ = __delitem__ = __ior__ = _read_only
    clear = pop = popitem = setdefault = update = _read_only

    def __copy__(self) -> "FrozenArguments":
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> "FrozenArguments":
        return self

    def __reduce__(self) -> tuple[Any, ...]:
        return (FrozenArguments, (dict(self),))


def freeze_arguments(value: Any) -> Any:
    if isinstance(value, Mapping):
        return FrozenArguments({key: freeze_arguments(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_arguments(item) for item in value)
    return value


class ToolCallRequest(BaseModel):
    """A tool call emitted by the worker model mid-turn."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(..., min_length=1)
    arguments: Mapping[str, Any] = Field(default_factory=FrozenArguments)
    correlation_id: str = Field(..., min_length=1)
    call_id: str | None = Field(default=None, description="Identifier the worker model attached to the call.")

    @field_validator("arguments")
    @classmethod
    def _freeze_arguments(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze_arguments(value)


class AgentEndpoint(BaseModel):
    """Static registration of one agent; owned by the policy store."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    invocation_target: str = Field(..., min_length=1)
    allowed_destinations: tuple[str, ...] = ()
    timeout_seconds: float = Field(8.0, gt=0.0)
    max_result_bytes: int = Field(16_384, ge=64)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    required_arguments: tuple[str, ...] = ()

    def tool_spec(self) -> dict[str, Any]:
        """OpenAI-style function description handed to the worker model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or f"Invoke the {self.name} agent.",
                "parameters": self.parameters,
            },
        }


class SourceRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = Field(..., min_length=1)
    title: str = ""


class AgentSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    summary: str = ""
    structured_snippets: tuple[str, ...] = ()
    sources: tuple[SourceRef, ...] = ()
    partial: bool = Field(False, description="Set when the result was truncated to the endpoint's byte cap.")
    anomalies: tuple[str, ...] = Field(
        default=(),
        description="Policy violations observed in the agent response, e.g. sources outside the allowlist.",
    )

    @property
    def ok(self) -> bool:
        return True

    def as_tool_message(self) -> str:
        lines = [self.summary] if self.summary else []
        lines.extend(f"- {snippet}" for snippet in self.structured_snippets)
        if self.sources:
            lines.append("Sources:")
            lines.extend(f"- {source.title or source.url} <{source.url}>" for source in self.sources)
        if self.partial:
            lines.append("[result truncated]")
        return "\n".join(lines) or "(empty result)"


class AgentFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    kind: FailureKind
    message: str = ""

    @property
    def ok(self) -> bool:
        return False

    def as_tool_message(self) -> str:
        return f"tool call failed: {self.message or self.kind.value}"


AgentResult = Annotated[Union[AgentSuccess, AgentFailure], Field(discriminator="status")]


class AgentResponsePayload(BaseModel):
    """Wire shape returned by agent endpoints."""

    summary: str = ""
    snippets: list[str] = Field(default_factory=list)
    sources: list[SourceRef] = Field(default_factory=list)


__all__ = [
    "AgentEndpoint",
    "AgentFailure",
    "AgentResponsePayload",
    "AgentResult",
    "AgentSuccess",
    "FailureKind",
    "FrozenArguments",
    "SourceRef",
    "ToolCallRequest",
    "freeze_arguments",
]
