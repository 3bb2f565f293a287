from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from integrationhub.core.errors import ConnectorDisabledError, ConnectorNotFoundError
from integrationhub.domain.models import Connector
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.gateway import ApiKeyAuth, AuthConfig, BasicAuth, OutboundGateway, OutboundRequest
from integrationhub.services.redaction import error_detail, sanitize_metadata
from integrationhub.services.resilience import RateLimitPolicy
from integrationhub.services.transforms import TransformRegistry, apply_mappings, get_default_registry


logger = logging.getLogger(__name__)

# Response fields ERPs commonly use for the created record's id, in lookup order.
RECORD_ID_FIELDS = ("recordId", "id", "orderId", "customerId", "ORDNAME", "CUSTNAME")


class PushEndpoint(BaseModel):
    method: Literal["POST", "PUT", "PATCH", "DELETE"] = "POST"
    path: str
    headers: dict[str, str] = Field(default_factory=dict)


class PushRequest(BaseModel):
    # Queue payload for the push worker; record_id names the audit row.
    record_id: str = Field(default_factory=lambda: uuid4().hex)
    tenant_id: str
    connector_id: str
    form_id: str | None = None
    submission_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    endpoint: PushEndpoint


@dataclass(frozen=True)
class PushResponse:
    record_id: str
    status_code: int
    duration_ms: float
    erp_record_id: str | None = None
    result: Any = None


def extract_record_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    for field_name in RECORD_ID_FIELDS:
        value = data.get(field_name)
        if value:
            return str(value)
    return None


def build_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + (path if path.startswith("/") else f"/{path}")


def connector_auth(connector: Connector) -> AuthConfig | None:
    credentials = connector.credentials or {}
    auth_type = connector.auth_type or credentials.get("type") or "none"
    if auth_type == "basic":
        return BasicAuth(
            username=str(credentials.get("username", "")),
            password=str(credentials.get("password", "")),
        )
    if auth_type == "apikey":
        return ApiKeyAuth(
            api_key=str(credentials.get("api_key") or credentials.get("apiKey") or ""),
            header_name=credentials.get("header_name") or credentials.get("headerName") or "X-API-Key",
        )
    return None


def connector_rate_limit(connector: Connector) -> RateLimitPolicy | None:
    if connector.rate_limit_max_requests and connector.rate_limit_window_ms:
        return RateLimitPolicy(
            max_requests=connector.rate_limit_max_requests,
            window_ms=connector.rate_limit_window_ms,
        )
    return None


async def load_push_connector(store: PipelineStore, *, connector_id: str, tenant_id: str) -> Connector:
    connector = await store.get_connector(connector_id)
    # Cross-tenant lookups read as missing so connector ids are not disclosed.
    if connector is None or connector.tenant_id != tenant_id:
        raise ConnectorNotFoundError(f"connector {connector_id} not found")
    if not connector.enabled:
        raise ConnectorDisabledError(f"connector {connector_id} is disabled")
    if not connector.base_url:
        raise ConnectorDisabledError(f"connector {connector_id} has no base_url configured")
    return connector


async def push_data(
    request: PushRequest,
    *,
    gateway: OutboundGateway,
    store: PipelineStore,
    attempt: int = 1,
    registry: TransformRegistry | None = None,
) -> PushResponse:
    """Send one form submission to a connector's ERP endpoint.

    The audit row is created on the first attempt and updated on every later
    one. Failures leave it ``queued`` with the last error; the worker marks it
    ``failed`` once the queue gives up.
    """
    start = time.monotonic()
    if attempt <= 1:
        await store.create_push_record(
            {
                "id": request.record_id,
                "tenant_id": request.tenant_id,
                "connector_id": request.connector_id,
                "submission_id": request.submission_id,
                "status": "queued",
                "attempt": attempt,
            }
        )
    try:
        connector = await load_push_connector(
            store, connector_id=request.connector_id, tenant_id=request.tenant_id
        )
        body: dict[str, Any] = request.data
        if connector.field_mappings:
            body = apply_mappings(
                request.data,
                connector.field_mappings,
                direction="push",
                registry=registry or get_default_registry(),
            )
        response = await gateway.send(
            connector.id,
            request.tenant_id,
            OutboundRequest(
                url=build_url(connector.base_url or "", request.endpoint.path),
                method=request.endpoint.method,
                headers=dict(request.endpoint.headers),
                body=body,
                auth=connector_auth(connector),
                rate_limit=connector_rate_limit(connector),
            ),
        )
    except Exception as exc:
        duration_ms = round((time.monotonic() - start) * 1000.0, 2)
        await store.update_push_record(
            request.record_id,
            attempt=attempt,
            status_code=getattr(exc, "status_code", None),
            error=error_detail(exc),
            duration_ms=duration_ms,
        )
        logger.warning(
            "push_failed record_id=%s connector=%s tenant=%s attempt=%s error=%s",
            request.record_id,
            request.connector_id,
            request.tenant_id,
            attempt,
            type(exc).__name__,
        )
        raise

    duration_ms = round((time.monotonic() - start) * 1000.0, 2)
    erp_record_id = extract_record_id(response.data)
    await store.update_push_record(
        request.record_id,
        status="succeeded",
        attempt=attempt,
        status_code=response.status_code,
        erp_record_id=erp_record_id,
        error=None,
        duration_ms=duration_ms,
    )
    logger.info(
        "push_completed record_id=%s connector=%s status=%s erp_record_id=%s duration_ms=%.1f",
        request.record_id,
        request.connector_id,
        response.status_code,
        erp_record_id,
        duration_ms,
    )
    return PushResponse(
        record_id=request.record_id,
        status_code=response.status_code,
        duration_ms=duration_ms,
        erp_record_id=erp_record_id,
        result=sanitize_metadata(response.data),
    )


async def mark_push_failed(store: PipelineStore, record_id: str, exc: BaseException) -> None:
    await store.update_push_record(record_id, status="failed", error=error_detail(exc))
    logger.warning("push_abandoned record_id=%s error=%s", record_id, type(exc).__name__)
