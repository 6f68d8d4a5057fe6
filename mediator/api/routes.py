from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import ValidationError

from ..core.logging import get_logger
from ..core.security import CORRELATION_HEADER, POLICY_ADMIN_SCOPE, get_presented_api_key, require_scopes
from ..dependencies import Runtime, get_orchestrator, get_policy_store, get_runtime
from ..orchestration.orchestrator import Orchestrator
from ..orchestration.tool_policy import PolicyStore
from ..schemas.policy import AgentSummary, KeySummary
from ..schemas.turns import ErrorResponse, TurnRequest, TurnResponse

logger = get_logger(name=__name__)

router = APIRouter()
turn_router = APIRouter()
admin_router = APIRouter(prefix="/admin", tags=["admin"])

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
}


@turn_router.post("/turn", response_model=TurnResponse, responses=_ERROR_RESPONSES, tags=["turns"])
async def submit_turn(
    payload: TurnRequest,
    response: Response,
    header_key: str | None = Depends(get_presented_api_key),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TurnResponse:
    api_key = orchestrator.authorize(payload.api_key or header_key)
    outcome = await orchestrator.handle_turn(payload.prompt, api_key, history=payload.history)
    response.headers[CORRELATION_HEADER] = outcome.correlation_id
    return TurnResponse(
        answer=outcome.answer,
        correlation_id=outcome.correlation_id,
        status=outcome.status,
        tool_calls=outcome.tool_calls,
        markers=outcome.markers,
    )


@router.get("/health", tags=["health"])
async def health(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    return {
        "status": "ok",
        "agents": len(runtime.policy.agents()),
        "policy_version": runtime.policy.snapshot.version,
        "scoring_queue_depth": runtime.scoring.depth,
        "scoring_running": runtime.scoring.running,
        "inflight_turns": runtime.orchestrator.inflight,
    }


@admin_router.get("/agents", response_model=list[AgentSummary])
async def list_agents(
    _: dict[str, Any] = Depends(require_scopes(POLICY_ADMIN_SCOPE)),
    policy: PolicyStore = Depends(get_policy_store),
) -> list[AgentSummary]:
    return [
        AgentSummary(
            name=endpoint.name,
            invocation_target=endpoint.invocation_target,
            allowed_destinations=list(endpoint.allowed_destinations),
            timeout_seconds=endpoint.timeout_seconds,
            max_result_bytes=endpoint.max_result_bytes,
        )
        for endpoint in policy.agents()
    ]


@admin_router.post("/keys/{key_id}/revoke", response_model=KeySummary)
async def revoke_key(
    key_id: str,
    token_payload: dict[str, Any] = Depends(require_scopes(POLICY_ADMIN_SCOPE)),
    policy: PolicyStore = Depends(get_policy_store),
) -> KeySummary:
    revoked = policy.revoke_key(key_id)
    logger.warning("api_key_revoked_by_admin", key_id=key_id, subject=token_payload.get("sub"))
    return KeySummary(key_id=revoked.key_id, scope=sorted(revoked.scope), revoked=revoked.revoked)


@admin_router.post("/policy/reload")
async def reload_policy(
    token_payload: dict[str, Any] = Depends(require_scopes(POLICY_ADMIN_SCOPE)),
    policy: PolicyStore = Depends(get_policy_store),
) -> dict[str, Any]:
    try:
        snapshot = await asyncio.to_thread(policy.reload)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (json.JSONDecodeError, ValidationError) as exc:
        logger.error("policy_reload_failed", error=str(exc), subject=token_payload.get("sub"))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Policy file is invalid") from exc
    logger.info("policy_reloaded", version=snapshot.version, subject=token_payload.get("sub"))
    return {
        "version": snapshot.version,
        "agents": sorted(snapshot.agents),
        "keys": len(snapshot.keys),
    }


router.include_router(turn_router)
router.include_router(admin_router)


__all__ = ["admin_router", "router", "turn_router"]
