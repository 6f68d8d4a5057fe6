from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from ..core import metrics
from ..core.config import AuditSettings
from ..core.logging import get_logger
from ..schemas.turns import TurnRecord
from ..schemas.verdicts import AuditEntry, WatchdogVerdict

logger = get_logger(name=__name__)


class AuditSink(Protocol):
    async def append(self, record: TurnRecord, verdict: WatchdogVerdict) -> AuditEntry:
        ...


class _SerializedSink:
    """Common single-writer discipline: one append at a time per sink."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    async def append(self, record: TurnRecord, verdict: WatchdogVerdict) -> AuditEntry:
        if verdict.correlation_id != record.correlation_id:
            raise ValueError(
                f"Verdict for '{verdict.correlation_id}' cannot be filed under '{record.correlation_id}'"
            )
        entry = AuditEntry(correlation_id=record.correlation_id, turn=record, verdict=verdict)
        async with self._lock:
            await self._write(entry)
        metrics.record_watchdog_verdict(risk_level=verdict.risk_level.value, unavailable=verdict.unavailable)
        logger.info(
            "audit_entry_written",
            correlation_id=entry.correlation_id,
            risk_level=verdict.risk_level.value,
            unavailable=verdict.unavailable,
        )
        return entry

    async def _write(self, entry: AuditEntry) -> None:
        raise NotImplementedError


class InMemoryAuditSink(_SerializedSink):
    def __init__(self) -> None:
        super().__init__()
        self.entries: list[AuditEntry] = []

    async def _write(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    def for_correlation(self, correlation_id: str) -> list[AuditEntry]:
        return [entry for entry in self.entries if entry.correlation_id == correlation_id]


class JsonlAuditSink(_SerializedSink):
    """Append-only JSON-lines file; the service never reads it back."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    async def _write(self, entry: AuditEntry) -> None:
        line = entry.model_dump_json()
        await asyncio.to_thread(self._append_line, line)

    def _append_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")
            handle.flush()


def build_audit_sink(settings: AuditSettings) -> AuditSink:
    if settings.sink == "memory":
        return InMemoryAuditSink()
    return JsonlAuditSink(settings.path)


__all__ = ["AuditSink", "InMemoryAuditSink", "JsonlAuditSink", "build_audit_sink"]
