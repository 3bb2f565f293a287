from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field

from integrationhub.core.config import get_settings
from integrationhub.core.errors import GatewayError, WebhookNotFoundError
from integrationhub.domain.models import DeadLetterEntry, WebhookEndpoint
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.gateway import OutboundGateway, OutboundRequest
from integrationhub.services.redaction import error_summary


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookPayload(BaseModel):
    # Body delivered to subscribers; delivery_id is stable across retries.
    delivery_id: str = Field(default_factory=lambda: uuid4().hex)
    event: str
    form_id: str | None = None
    timestamp: datetime = Field(default_factory=_utc_now)
    data: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    response_time_ms: float
    signature: str
    status_code: int | None = None
    error: GatewayError | None = None

    @property
    def error_message(self) -> str | None:
        return error_summary(self.error) if self.error is not None else None


def serialize_body(body: Any) -> str:
    # Compact JSON; the signature covers exactly these bytes.
    if isinstance(body, BaseModel):
        return body.model_dump_json()
    if isinstance(body, (bytes, bytearray)):
        return body.decode("utf-8")
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str)


def sign_payload(secret: str, payload: str | bytes) -> str:
    raw = payload.encode("utf-8") if isinstance(payload, str) else payload
    return hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, body: Any) -> tuple[dict[str, str], str]:
    serialized = serialize_body(body)
    header = get_settings().webhook_signature_header
    return {header: f"sha256={sign_payload(secret, serialized)}"}, serialized


def verify_signature(secret: str, payload: str | bytes, signature: str) -> bool:
    expected = f"sha256={sign_payload(secret, payload)}"
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


async def find_webhooks_for_event(
    store: PipelineStore, *, tenant_id: str, event: str, form_id: str | None = None
) -> list[WebhookEndpoint]:
    return await store.find_webhooks(tenant_id=tenant_id, event=event, form_id=form_id)


async def enqueue_webhook_deliveries(
    store: PipelineStore,
    *,
    tenant_id: str,
    payload: WebhookPayload,
    enqueue: Callable[[str, dict[str, Any]], Awaitable[str]] | None = None,
) -> list[str]:
    """Fan one event out to every subscribed endpoint as separate queue jobs."""
    if enqueue is None:
        from integrationhub.services.queues import enqueue_webhook_delivery

        enqueue = enqueue_webhook_delivery
    endpoints = await find_webhooks_for_event(
        store, tenant_id=tenant_id, event=payload.event, form_id=payload.form_id
    )
    job_ids: list[str] = []
    for endpoint in endpoints:
        try:
            job_ids.append(await enqueue(endpoint.id, payload.model_dump(mode="json")))
        except Exception:  # noqa: BLE001 - one unreachable enqueue must not block other subscribers.
            logger.exception("webhook_enqueue_failed webhook_id=%s event=%s", endpoint.id, payload.event)
    return job_ids


async def deliver_webhook(
    endpoint: WebhookEndpoint,
    payload: WebhookPayload,
    *,
    gateway: OutboundGateway,
    store: PipelineStore,
    attempt: int = 1,
) -> DeliveryResult:
    settings = get_settings()
    signature_headers, body = build_signature_header(endpoint.secret, payload)
    signature = next(iter(signature_headers.values()))
    request = OutboundRequest(
        url=endpoint.url,
        method="POST",
        headers={
            "Content-Type": "application/json",
            "User-Agent": settings.webhook_user_agent,
            **signature_headers,
        },
        body=body,
        timeout_ms=settings.webhook_timeout_ms,
        # The webhook queue owns retries; one HTTP attempt per job try.
        max_retries=1,
    )
    try:
        response = await gateway.send(f"webhook:{endpoint.id}", endpoint.tenant_id, request)
    except GatewayError as exc:
        result = DeliveryResult(
            success=False,
            response_time_ms=exc.duration_ms,
            signature=signature,
            status_code=exc.status_code,
            error=exc,
        )
    else:
        result = DeliveryResult(
            success=True,
            response_time_ms=response.duration_ms,
            signature=signature,
            status_code=response.status_code,
        )
    await store.record_webhook_delivery(
        {
            "id": uuid4().hex,
            "webhook_id": endpoint.id,
            "tenant_id": endpoint.tenant_id,
            "event": payload.event,
            "payload_hash": hashlib.sha256(body.encode("utf-8")).hexdigest(),
            "signature": signature,
            "status": "delivered" if result.success else "failed",
            "status_code": result.status_code,
            "error_message": result.error_message,
            "response_time_ms": result.response_time_ms,
            "attempt": attempt,
            "delivered_at": _utc_now() if result.success else None,
        }
    )
    updated = await store.update_webhook_health(
        endpoint.id,
        success=result.success,
        degraded_after=settings.webhook_degraded_after_failures,
        disable_after=settings.webhook_disable_after_failures,
    )
    if updated is not None and updated.status == "disabled" and not result.success:
        logger.warning("webhook_auto_disabled webhook_id=%s failures=%s", endpoint.id, updated.consecutive_failures)
    logger.info(
        "webhook_delivery webhook_id=%s event=%s attempt=%s success=%s status=%s",
        endpoint.id,
        payload.event,
        attempt,
        result.success,
        result.status_code,
    )
    return result


def dead_letter_snapshots(endpoint: WebhookEndpoint, payload: WebhookPayload) -> dict[str, Any]:
    # Webhook entries key on the delivery id; the endpoint is re-read on redelivery.
    return {
        "event_snapshot": {
            "event_id": payload.delivery_id,
            "tenant_id": endpoint.tenant_id,
            "payload": payload.model_dump(mode="json"),
        },
        "trigger_snapshot": None,
        "action_snapshot": {"id": endpoint.id, "action_type": "webhook", "event": payload.event},
    }


def build_redeliver(
    *, gateway: OutboundGateway, store: PipelineStore
) -> Callable[[DeadLetterEntry], Awaitable[DeliveryResult]]:
    async def _redeliver(entry: DeadLetterEntry) -> DeliveryResult:
        endpoint = await store.get_webhook(entry.action_id)
        if endpoint is None or endpoint.status != "active":
            raise WebhookNotFoundError(f"webhook {entry.action_id} is missing or inactive")
        payload = WebhookPayload.model_validate(entry.event_snapshot["payload"])
        result = await deliver_webhook(endpoint, payload, gateway=gateway, store=store, attempt=entry.failure_count + 1)
        if not result.success and result.error is not None:
            raise result.error
        return result

    return _redeliver
