from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerModelSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where the worker model's Ollama server runs.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3.1:8b", description="Primary model answering user requests.")
    temperature: float = Field(0.1, ge=0.0, le=2.0)
    timeout_seconds: float = Field(60.0, gt=0.0, description="Upper bound for a single worker model call.")
    system_prompt: str = Field(
        "You are a helpful assistant without direct network access. When you need outside information,"
        " request one of the provided tools and wait for its result.",
        min_length=1,
    )


class WatchdogSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where the watchdog model's Ollama server runs.")
    port: int = Field(11435, ge=1, le=65535)
    model: str = Field("llama3.2:3b", description="Secondary model scoring each turn for risk.")
    timeout_seconds: float = Field(3.0, gt=0.0, description="Hard timeout for one scoring call.")
    summary_chars: int = Field(400, ge=16, description="Cap applied to prompt and answer text sent for scoring.")
    notes_chars: int = Field(500, ge=0, description="Cap applied to the verdict notes returned by the watchdog.")
    workers: int = Field(2, ge=1, description="Number of concurrent scoring workers.")
    queue_size: int = Field(256, ge=1, description="Maximum sealed turns waiting to be scored.")
    drain_timeout_seconds: float = Field(10.0, ge=0.0, description="Time allowed to drain the queue on shutdown.")
    system_prompt: str = Field(
        "You audit conversation turns of an AI assistant. Reply with a JSON object containing"
        ' "risk_level" (low, medium or high), "reasons" (a list drawn from possible_data_exfil,'
        " destructive_command, jailbreak_probe, out_of_policy, agent_anomaly) and"
        ' "notes" (one short sentence).',
        min_length=1,
    )


class OrchestratorSettings(BaseModel):
    max_tool_round_trips: int = Field(5, ge=0, description="Tool-call round-trips allowed per turn.")
    prompt_summary_chars: int = Field(2_000, ge=16)
    answer_summary_chars: int = Field(2_000, ge=16)
    redact_summaries: bool = Field(True, description="Mask e-mail addresses and secret-looking tokens in records.")
    correlation_id_memory: int = Field(
        10_000,
        ge=0,
        description="Number of sealed correlation ids remembered for collision detection.",
    )


class AgentEndpointSettings(BaseModel):
    name: str = Field(..., min_length=1)
    invocation_target: str = Field(..., min_length=1, description="URL the gateway POSTs tool calls to.")
    allowed_destinations: list[str] = Field(default_factory=list, description="URL prefixes this agent may contact.")
    timeout_seconds: float = Field(8.0, gt=0.0)
    max_result_bytes: int = Field(16_384, ge=64)
    description: str = Field("", description="Tool description advertised to the worker model.")
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
        description="JSON schema of the tool arguments advertised to the worker model.",
    )
    required_arguments: list[str] = Field(default_factory=list)


class ApiKeySettings(BaseModel):
    key_id: str = Field(..., min_length=1)
    token: SecretStr
    scope: list[str] = Field(default_factory=list, description="Tool names this key may dispatch; empty means chat-only.")
    revoked: bool = Field(False)


class PolicySettings(BaseModel):
    policy_file: Path | None = Field(
        default=None,
        description="Optional JSON document with 'agents' and 'api_keys'; takes precedence over inline entries.",
    )
    agents: list[AgentEndpointSettings] = Field(default_factory=list)
    api_keys: list[ApiKeySettings] = Field(default_factory=list)


class ToolSettings(BaseModel):
    max_argument_chars: int = Field(4_000, ge=1, description="Longest string accepted inside tool arguments.")


class AuditSettings(BaseModel):
    sink: Literal["jsonl", "memory"] = Field("jsonl")
    path: Path = Field(Path("audit/turns.jsonl"), description="Append-only file used by the jsonl sink.")


class AuthSettings(BaseModel):
    jwt_secret_key: str = Field("0" * 32, min_length=32)
    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    access_token_expire_minutes: int = Field(60, ge=1)


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")
    cors_origins: list[str] = Field(default_factory=list, description="Origins allowed to call the API from a browser.")

    worker: WorkerModelSettings = Field(default_factory=WorkerModelSettings)  # type: ignore[arg-type]
    watchdog: WatchdogSettings = Field(default_factory=WatchdogSettings)  # type: ignore[arg-type]
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)  # type: ignore[arg-type]
    policy: PolicySettings = Field(default_factory=PolicySettings)  # type: ignore[arg-type]
    tools: ToolSettings = Field(default_factory=ToolSettings)  # type: ignore[arg-type]
    audit: AuditSettings = Field(default_factory=AuditSettings)  # type: ignore[arg-type]
    auth: AuthSettings = Field(default_factory=AuthSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
