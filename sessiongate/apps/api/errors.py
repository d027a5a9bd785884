from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sessiongate.core.errors import (
    DeliveryRecordError,
    InputValidationError,
    ProviderConfigError,
    ProviderSendError,
    QuotaExceededError,
    SessionGateError,
    StoreError,
    TemplateNotConfiguredError,
    TenantNotFoundError,
)
from sessiongate.services.quota import QuotaStatus, build_quota_exception


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    402: "QUOTA_EXCEEDED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _error_payload(code: str, message: str, **details: Any) -> dict[str, Any]:
    detail: dict[str, Any] = {"code": code, "message": message}
    detail.update({key: value for key, value in details.items() if value is not None})
    return {"detail": detail}


def _classify(exc: SessionGateError) -> tuple[int, str, dict[str, Any]]:
    # Most specific classes first; TemplateNotConfiguredError is a ProviderConfigError.
    if isinstance(exc, InputValidationError):
        return 400, "INVALID_INPUT", {}
    if isinstance(exc, TenantNotFoundError):
        return 404, "TENANT_NOT_FOUND", {}
    if isinstance(exc, TemplateNotConfiguredError):
        return 502, "TEMPLATE_NOT_CONFIGURED", {}
    if isinstance(exc, ProviderConfigError):
        return 502, "PROVIDER_NOT_CONFIGURED", {}
    if isinstance(exc, ProviderSendError):
        return 502, "PROVIDER_SEND_FAILED", {"provider_code": exc.code, "provider_status": exc.status}
    if isinstance(exc, DeliveryRecordError):
        # Already delivered; a client retry would send it again.
        return 500, "DELIVERY_RECORD_FAILED", {"provider_sid": exc.provider_sid}
    if isinstance(exc, StoreError):
        return 503, "STORE_UNAVAILABLE", {}
    return 500, "INTERNAL_ERROR", {}


async def session_gate_exception_handler(request: Request, exc: SessionGateError) -> JSONResponse:
    # Map domain errors to stable status codes and machine-readable codes.
    if isinstance(exc, QuotaExceededError) and isinstance(exc.status, QuotaStatus):
        quota_exc = build_quota_exception(exc.status)
        return JSONResponse(
            content={"detail": quota_exc.detail},
            status_code=quota_exc.status_code,
            headers=quota_exc.headers,
        )
    if isinstance(exc, QuotaExceededError):
        return JSONResponse(content=_error_payload("QUOTA_EXCEEDED", str(exc)), status_code=402)
    status_code, code, details = _classify(exc)
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    return JSONResponse(content=_error_payload(code, str(exc), **details), status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, str):
        detail = {"code": _default_code(exc.status_code), "message": detail}
    return JSONResponse(content={"detail": detail}, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Surface validation errors with structured details for client parsing.
    return JSONResponse(
        content=_error_payload("REQUEST_VALIDATION_ERROR", "Validation error", errors=exc.errors()),
        status_code=422,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error payload.
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(content=_error_payload("INTERNAL_ERROR", "Internal server error"), status_code=500)
