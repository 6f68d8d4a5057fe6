from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .turns import TurnRecord


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    UNKNOWN = "unknown"


class RiskReason(str, Enum):
    POSSIBLE_DATA_EXFIL = "possible_data_exfil"
    DESTRUCTIVE_COMMAND = "destructive_command"
    JAILBREAK_PROBE = "jailbreak_probe"
    OUT_OF_POLICY = "out_of_policy"
    AGENT_ANOMALY = "agent_anomaly"


class WatchdogVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    correlation_id: str = Field(..., min_length=1)
    risk_level: RiskLevel
    reasons: frozenset[RiskReason] = frozenset()
    notes: str = ""
    unavailable: bool = False
    produced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def unavailable_for(
        cls,
        correlation_id: str,
        *,
        notes: str = "",
        reasons: frozenset[RiskReason] = frozenset(),
    ) -> "WatchdogVerdict":
        return cls(
            correlation_id=correlation_id,
            risk_level=RiskLevel.UNKNOWN,
            reasons=reasons,
            notes=notes,
            unavailable=True,
        )


class WatchdogVerdictPayload(BaseModel):
    """Structured verdict as produced by the scoring model."""

    risk_level: Literal["low", "medium", "high"]
    reasons: list[str] = Field(default_factory=list)
    notes: str = ""


class AuditEntry(BaseModel):
    """One append-only audit line: a sealed turn and its single verdict."""

    correlation_id: str
    turn: TurnRecord
    verdict: WatchdogVerdict
    written_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


__all__ = ["AuditEntry", "RiskLevel", "RiskReason", "WatchdogVerdict", "WatchdogVerdictPayload"]
