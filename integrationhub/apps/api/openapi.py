from __future__ import annotations

from typing import Any

from integrationhub.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Bad request", "BAD_REQUEST", "Missing X-Tenant-Id header"),
    404: _error_response("Not found", "NOT_FOUND", "Dead-letter entry not found"),
    409: _error_response("Conflict", "CONFLICT", "Dead-letter entry is still pending"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
}
