from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"
TENANT_HEADER = "X-Tenant-Id"

DataT = TypeVar("DataT")


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    # Echoed for tenant-scoped operator calls only.
    tenant_id: str | None = None


class ApiError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: EnvelopeMeta


class ErrorEnvelope(BaseModel):
    error: ApiError
    meta: EnvelopeMeta


def request_id_for(request: Request) -> str:
    # The middleware normally sets this; handlers that run before it fall back to the header.
    cached = getattr(request.state, "request_id", None)
    if not cached:
        cached = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = cached
    return cached


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    meta = EnvelopeMeta(request_id=request_id_for(request), tenant_id=request.headers.get(TENANT_HEADER))
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ApiError(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
