from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import Depends, HTTPException, Request, status

from .core.config import Settings
from .core.logging import get_logger
from .orchestration.orchestrator import Orchestrator
from .orchestration.recorder import TurnRecorder
from .orchestration.tool_policy import PolicyStore
from .queue.manager import ScoringQueue
from .services.agent_gateway import AgentGateway
from .services.audit_log import AuditSink, build_audit_sink
from .services.llm import WorkerModel
from .services.watchdog import WatchdogClient

logger = get_logger(name=__name__)


@dataclass(slots=True)
class Runtime:
    """Process-wide collaborators shared by every request."""

    settings: Settings
    policy: PolicyStore
    gateway: AgentGateway
    worker: WorkerModel
    watchdog: WatchdogClient
    sink: AuditSink
    recorder: TurnRecorder
    scoring: ScoringQueue
    orchestrator: Orchestrator

    async def start(self) -> None:
        await self.scoring.start()
        logger.info("runtime_started", agents=len(self.policy.agents()), keys=len(self.policy.keys()))

    async def stop(self) -> None:
        # turns still in flight must seal and enqueue before the pool drains
        await self.orchestrator.drain()
        await self.scoring.stop()
        await self.gateway.aclose()
        logger.info("runtime_stopped")


def build_runtime(
    settings: Settings,
    *,
    worker_client: Any | None = None,
    watchdog_client: Any | None = None,
    agent_client: httpx.AsyncClient | None = None,
    sink: AuditSink | None = None,
    policy: PolicyStore | None = None,
) -> Runtime:
    policy = policy or PolicyStore.from_settings(settings)
    gateway = AgentGateway.from_settings(settings, policy, client=agent_client)
    worker = WorkerModel.from_settings(settings, client=worker_client)
    watchdog = WatchdogClient.from_settings(settings, client=watchdog_client)
    sink = sink or build_audit_sink(settings.audit)
    recorder = TurnRecorder.from_settings(settings.orchestrator)
    scoring = ScoringQueue.from_settings(settings, watchdog, sink)
    orchestrator = Orchestrator.from_settings(
        settings,
        policy=policy,
        gateway=gateway,
        worker=worker,
        recorder=recorder,
        scoring=scoring,
    )
    return Runtime(
        settings=settings,
        policy=policy,
        gateway=gateway,
        worker=worker,
        watchdog=watchdog,
        sink=sink,
        recorder=recorder,
        scoring=scoring,
        orchestrator=orchestrator,
    )


def get_runtime(request: Request) -> Runtime:
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return runtime


def get_orchestrator(runtime: Runtime = Depends(get_runtime)) -> Orchestrator:
    return runtime.orchestrator


def get_policy_store(runtime: Runtime = Depends(get_runtime)) -> PolicyStore:
    return runtime.policy


__all__ = [
    "Runtime",
    "build_runtime",
    "get_orchestrator",
    "get_policy_store",
    "get_runtime",
]
