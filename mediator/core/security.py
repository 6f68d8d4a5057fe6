from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .config import Settings, get_settings

API_KEY_HEADER = "X-API-Key"
CORRELATION_HEADER = "X-Correlation-Id"
POLICY_ADMIN_SCOPE = "policy:admin"

ROLE_SCOPE_MAP: dict[str, set[str]] = {
    "policy_admin": {POLICY_ADMIN_SCOPE},
}


def create_access_token(
    subject: str,
    *,
    expires_delta: timedelta | None = None,
    extra_claims: dict[str, Any] | None = None,
    settings: Settings | None = None,
) -> str:
    settings = settings or get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta
        if expires_delta is not None
        else timedelta(minutes=settings.auth.access_token_expire_minutes)
    )
    payload: dict[str, Any] = {"exp": expire, "sub": subject}
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(
        payload,
        settings.auth.jwt_secret_key,
        algorithm=settings.auth.jwt_algorithm,
    )


def decode_access_token(token: str, settings: Settings | None = None) -> dict[str, Any]:
    settings = settings or get_settings()
    try:
        return jwt.decode(
            token,
            settings.auth.jwt_secret_key,
            algorithms=[settings.auth.jwt_algorithm],
        )
    except jwt.PyJWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from exc


bearer_scheme = HTTPBearer(auto_error=False)
api_key_scheme = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def get_app_settings(request: Request) -> Settings:
    """Settings the running application was built with."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_current_subject(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return decode_access_token(credentials.credentials, settings)


def get_presented_api_key(header_value: str | None = Depends(api_key_scheme)) -> str | None:
    """Client API key from the ``X-API-Key`` header; the request body may carry it instead."""
    if header_value is None:
        return None
    return header_value.strip() or None


def _normalize_roles(token_payload: dict[str, Any]) -> set[str]:
    assigned_roles = token_payload.get("roles")
    if isinstance(assigned_roles, str):
        assigned_roles = [segment.strip() for segment in assigned_roles.split(",") if segment.strip()]
    if not isinstance(assigned_roles, (list, tuple, set)):
        return set()
    return {str(role).lower() for role in assigned_roles if role}


def resolve_scopes(token_payload: dict[str, Any]) -> set[str]:
    explicit_scopes: set[str] = set()
    for key in ("scope", "scopes"):
        claim = token_payload.get(key)
        if isinstance(claim, str):
            explicit_scopes.update(segment.strip() for segment in claim.split() if segment.strip())
        elif isinstance(claim, (list, tuple, set)):
            explicit_scopes.update(str(item).strip() for item in claim if str(item).strip())
    for role in _normalize_roles(token_payload):
        explicit_scopes.update(ROLE_SCOPE_MAP.get(role, set()))
    return {scope for scope in explicit_scopes if scope}


def require_scopes(*scopes: str):
    def _dependency(token_payload: dict[str, Any] = Depends(get_current_subject)) -> dict[str, Any]:
        granted = resolve_scopes(token_payload)
        required = {scope for scope in scopes if scope}
        if required and not required.issubset(granted):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return token_payload

    return _dependency


__all__ = [
    "API_KEY_HEADER",
    "CORRELATION_HEADER",
    "POLICY_ADMIN_SCOPE",
    "ROLE_SCOPE_MAP",
    "api_key_scheme",
    "create_access_token",
    "decode_access_token",
    "get_app_settings",
    "get_current_subject",
    "get_presented_api_key",
    "require_scopes",
    "resolve_scopes",
]
