from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from sessiongate.apps.api.errors import (
    http_exception_handler,
    session_gate_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from sessiongate.apps.api.routes.health import router as health_router
from sessiongate.apps.api.routes.notify import router as notify_router
from sessiongate.apps.api.routes.usage import router as usage_router
from sessiongate.apps.api.routes.webhooks import router as webhooks_router
from sessiongate.core.config import get_settings
from sessiongate.core.errors import SessionGateError
from sessiongate.core.logging import configure_logging
from sessiongate.services.telemetry import init_metrics


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    init_metrics()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%d latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(SessionGateError)
    async def _session_gate_exception_handler(request: Request, exc: SessionGateError):
        return await session_gate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(notify_router)
    app.include_router(usage_router)
    return app


app = create_app()
