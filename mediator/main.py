from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .api.routes import turn_router
from .core.audit import AuditLoggingMiddleware
from .core.config import Settings, get_settings
from .core.exceptions import MediatorError
from .core.logging import configure_logging, get_logger
from .core.security import CORRELATION_HEADER
from .dependencies import Runtime, build_runtime
from .schemas.turns import ErrorResponse

settings = get_settings()
configure_logging(settings.observability.log_level)
logger = get_logger(name=__name__)


async def mediator_error_handler(request: Request, exc: MediatorError) -> JSONResponse:
    headers = {CORRELATION_HEADER: exc.correlation_id} if exc.correlation_id else None
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.code, correlation_id=exc.correlation_id)
    body = ErrorResponse(error=exc.code, detail=exc.message, correlation_id=exc.correlation_id)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)


def create_app(app_settings: Settings | None = None, *, runtime: Runtime | None = None) -> FastAPI:
    app_settings = app_settings or settings

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        active = runtime or build_runtime(app_settings)
        app.state.runtime = active
        await active.start()
        try:
            yield
        finally:
            await active.stop()
            app.state.runtime = None

    app = FastAPI(title="Mediator", version="0.1.0", lifespan=app_lifespan)
    app.state.settings = app_settings
    app.state.runtime = None
    app.add_exception_handler(MediatorError, mediator_error_handler)  # type: ignore[arg-type]
    app.add_middleware(AuditLoggingMiddleware, include_prefixes=("/api/", "/turn", "/metrics"))
    if app_settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(api_router, prefix=app_settings.api_v1_prefix)
    app.include_router(turn_router, include_in_schema=False)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "Mediator running"}

    if app_settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


__all__ = ["app", "create_app", "mediator_error_handler"]
