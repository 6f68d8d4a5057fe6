from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import AgentEndpointSettings, ApiKeySettings


class ApiKey(BaseModel):
    """Client credential; empty scope means chat-only."""

    model_config = ConfigDict(frozen=True)

    key_id: str = Field(..., min_length=1)
    scope: frozenset[str] = frozenset()
    revoked: bool = False


class PolicyDocument(BaseModel):
    """Shape of the policy file and of the inline policy settings."""

    agents: list[AgentEndpointSettings] = Field(default_factory=list)
    api_keys: list[ApiKeySettings] = Field(default_factory=list)


class AgentSummary(BaseModel):
    name: str
    invocation_target: str
    allowed_destinations: list[str]
    timeout_seconds: float
    max_result_bytes: int


class KeySummary(BaseModel):
    key_id: str
    scope: list[str]
    revoked: bool


__all__ = ["AgentSummary", "ApiKey", "KeySummary", "PolicyDocument"]
