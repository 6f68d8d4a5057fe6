from __future__ import annotations

import hashlib
import json
from time import perf_counter
from typing import Any, Iterable

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from .logging import get_logger
from .security import API_KEY_HEADER, CORRELATION_HEADER, decode_access_token, resolve_scopes

_FINGERPRINT_CHARS = 12


def key_fingerprint(token: str) -> str:
    """Short digest prefix that identifies a key in logs without revealing it."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:_FINGERPRINT_CHARS]


def _api_key_from_body(body: bytes) -> str | None:
    try:
        payload: Any = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict) and isinstance(payload.get("api_key"), str):
        return payload["api_key"] or None
    return None


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one structured audit event per API request."""

    def __init__(self, app: ASGIApp, *, include_prefixes: Iterable[str] = ("/api/", "/metrics")) -> None:
        super().__init__(app)
        self._prefixes = tuple(include_prefixes)
        self._logger = get_logger(name="audit")

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if self._prefixes and not any(request.url.path.startswith(prefix) for prefix in self._prefixes):
            return await call_next(request)

        start = perf_counter()
        payload_hash = None
        body = b""
        if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
            body = await request.body()
            request._body = body  # type: ignore[attr-defined]
            if body:
                payload_hash = hashlib.sha256(body).hexdigest()

        presented = request.headers.get(API_KEY_HEADER) or (_api_key_from_body(body) if body else None)

        subject = None
        scopes: list[str] = []
        authorization = request.headers.get("authorization")
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization.split(" ", 1)[1].strip()
            if token:
                try:
                    payload = decode_access_token(token, getattr(request.app.state, "settings", None))
                except HTTPException:
                    payload = None
                if isinstance(payload, dict):
                    subject = str(payload.get("sub") or "") or None
                    scopes = sorted(resolve_scopes(payload))

        response = await call_next(request)
        duration = perf_counter() - start

        self._logger.info(
            "audit_log",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            subject=subject or "anonymous",
            scopes=scopes,
            api_key_fingerprint=key_fingerprint(presented) if presented else None,
            correlation_id=response.headers.get(CORRELATION_HEADER),
            payload_hash=payload_hash,
            content_length=len(body) if body else 0,
            client_ip=(request.client.host if request.client else None),
            duration_ms=round(duration * 1000, 3),
        )
        return response


__all__ = ["AuditLoggingMiddleware", "key_fingerprint"]
