from __future__ import annotations

from typing import Any, Mapping

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from integrationhub.apps.api.response import error_response, is_versioned_request
from integrationhub.core.errors import (
    ConnectorDisabledError,
    ConnectorNotFoundError,
    DeadLetterNotFoundError,
    DeadLetterStateError,
    GatewayError,
    IntegrationHubError,
    ValidationError,
    WebhookNotFoundError,
)


STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
    504: "UPSTREAM_TIMEOUT",
}

# Checked in order, so subclasses must come before their bases.
DOMAIN_ERROR_STATUS: tuple[tuple[type[IntegrationHubError], int, str], ...] = (
    (DeadLetterNotFoundError, 404, "DEAD_LETTER_NOT_FOUND"),
    (ConnectorNotFoundError, 404, "CONNECTOR_NOT_FOUND"),
    (WebhookNotFoundError, 404, "WEBHOOK_NOT_FOUND"),
    (DeadLetterStateError, 409, "DEAD_LETTER_CONFLICT"),
    (ConnectorDisabledError, 409, "CONNECTOR_DISABLED"),
    (ValidationError, 422, "VALIDATION_ERROR"),
)


def code_for_status(status_code: int) -> str:
    return STATUS_CODES.get(status_code, "UNKNOWN_ERROR")


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=dict(headers) if headers else None)


def _parse_http_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code": ..., "message": ..., **extra}) or a plain string.
    if isinstance(detail, str):
        return code_for_status(status_code), detail, None
    if not isinstance(detail, dict):
        return code_for_status(status_code), "Request failed", None
    extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
    return (
        str(detail.get("code") or code_for_status(status_code)),
        str(detail.get("message") or "Request failed"),
        extra or None,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        # Unversioned paths (docs, unknown routes) keep FastAPI's default shape.
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _parse_http_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )


def domain_error_status(exc: IntegrationHubError) -> tuple[int, str]:
    for error_type, status_code, code in DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    if isinstance(exc, GatewayError):
        return exc.status_code, code_for_status(exc.status_code)
    return 500, "INTERNAL_ERROR"


async def domain_exception_handler(request: Request, exc: IntegrationHubError) -> JSONResponse:
    status_code, code = domain_error_status(exc)
    details = exc.details if isinstance(exc, ValidationError) and exc.details else None
    return _envelope(request, status_code=status_code, code=code, message=str(exc), details=details)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # The message stays generic; the traceback goes to the log only.
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
