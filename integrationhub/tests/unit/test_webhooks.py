from __future__ import annotations

import hashlib
import hmac
import json

import httpx
import pytest

from integrationhub.core.errors import GatewayError, WebhookNotFoundError
from integrationhub.services.dead_letters import DeadLetterService
from integrationhub.services.gateway import OutboundGateway
from integrationhub.services.pipeline import classify_failure
from integrationhub.services.resilience import CircuitBreakerConfig, RateLimitPolicy
from integrationhub.services.webhooks import (
    WebhookPayload,
    build_redeliver,
    dead_letter_snapshots,
    deliver_webhook,
    enqueue_webhook_deliveries,
    sign_payload,
    verify_signature,
)
from integrationhub.tests.utils.fakes import FakeClock, FakeRedis, InMemoryPipelineStore, SleepRecorder, make_webhook


def _gateway(status: int, seen: list[httpx.Request] | None = None) -> OutboundGateway:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json={"received": status < 400})

    return OutboundGateway(
        store=FakeRedis(),
        transport=httpx.MockTransport(handler),
        sleep=SleepRecorder(),
        clock=FakeClock(),
        circuit_config=CircuitBreakerConfig(failure_threshold=50, cooldown_seconds=60, state_ttl_seconds=300),
        rate_limit_policy=RateLimitPolicy(max_requests=100, window_ms=60000),
    )


def _payload() -> WebhookPayload:
    return WebhookPayload(delivery_id="dlv-1", event="form.submitted", form_id="form-1", data={"email": "a@b.co"})


def test_signature_matches_hmac_and_verifies() -> None:
    body = '{"event":"test"}'
    expected = hmac.new(b"whsec", body.encode("utf-8"), hashlib.sha256).hexdigest()

    assert sign_payload("whsec", body) == expected
    assert verify_signature("whsec", body, f"sha256={expected}")
    assert not verify_signature("whsec", body + " ", f"sha256={expected}")
    assert not verify_signature("other", body, f"sha256={expected}")


@pytest.mark.asyncio
async def test_delivery_signs_body_records_row_and_marks_healthy(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook()
    store.webhooks[endpoint.id] = endpoint
    seen: list[httpx.Request] = []

    result = await deliver_webhook(endpoint, _payload(), gateway=_gateway(200, seen), store=store)

    assert result.success is True
    request = seen[0]
    assert verify_signature("whsec-test", request.content, request.headers["X-Hub-Signature"])
    assert request.headers["User-Agent"] == "IntegrationHub-Webhook/1.0"
    assert json.loads(request.content)["delivery_id"] == "dlv-1"
    [delivery] = store.deliveries
    assert delivery.status == "delivered"
    assert delivery.payload_hash == hashlib.sha256(request.content).hexdigest()
    assert delivery.delivered_at is not None
    assert endpoint.health_status == "healthy"
    assert endpoint.success_count == 1


@pytest.mark.asyncio
async def test_failed_delivery_records_error_and_degrades_endpoint(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook(consecutive_failures=4)
    store.webhooks[endpoint.id] = endpoint
    seen: list[httpx.Request] = []

    result = await deliver_webhook(endpoint, _payload(), gateway=_gateway(503, seen), store=store, attempt=2)

    assert result.success is False
    assert result.status_code == 503
    assert len(seen) == 1
    assert classify_failure(result.error) == "retryable"
    [delivery] = store.deliveries
    assert (delivery.status, delivery.attempt) == ("failed", 2)
    assert delivery.error_message.startswith("GatewayError")
    assert endpoint.health_status == "degraded"
    assert endpoint.status == "active"


@pytest.mark.asyncio
async def test_endpoint_is_disabled_after_consecutive_failures(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook(consecutive_failures=9)
    store.webhooks[endpoint.id] = endpoint

    result = await deliver_webhook(endpoint, _payload(), gateway=_gateway(410), store=store)

    assert classify_failure(result.error) == "fatal"
    assert endpoint.status == "disabled"
    assert endpoint.health_status == "unhealthy"


@pytest.mark.asyncio
async def test_rate_limited_and_timeout_answers_are_retryable(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook()
    store.webhooks[endpoint.id] = endpoint

    throttled = await deliver_webhook(endpoint, _payload(), gateway=_gateway(429), store=store)
    timed_out = await deliver_webhook(endpoint, _payload(), gateway=_gateway(408), store=store)

    assert classify_failure(throttled.error) == "retryable"
    assert classify_failure(timed_out.error) == "retryable"


@pytest.mark.asyncio
async def test_fan_out_enqueues_one_job_per_subscriber(store: InMemoryPipelineStore) -> None:
    store.webhooks["wh-1"] = make_webhook("wh-1")
    store.webhooks["wh-2"] = make_webhook("wh-2", form_id="form-1")
    store.webhooks["wh-3"] = make_webhook("wh-3", form_id="form-9")
    store.webhooks["wh-4"] = make_webhook("wh-4", events=["form.deleted"])
    store.webhooks["wh-5"] = make_webhook("wh-5", status="disabled")
    store.webhooks["wh-6"] = make_webhook("wh-6", tenant_id="tenant-b")
    enqueued: list[tuple[str, dict]] = []

    async def enqueue(webhook_id: str, payload: dict) -> str:
        if webhook_id == "wh-2":
            raise ConnectionError("redis down")
        enqueued.append((webhook_id, payload))
        return f"webhook:{webhook_id}"

    job_ids = await enqueue_webhook_deliveries(store, tenant_id="tenant-a", payload=_payload(), enqueue=enqueue)

    assert job_ids == ["webhook:wh-1"]
    assert enqueued[0][1]["delivery_id"] == "dlv-1"


@pytest.mark.asyncio
async def test_dead_lettered_delivery_replays_through_endpoint(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook()
    store.webhooks[endpoint.id] = endpoint
    seen: list[httpx.Request] = []
    service = DeadLetterService(store, webhook_redeliver=build_redeliver(gateway=_gateway(200, seen), store=store))
    entry = await service.escalate(
        **dead_letter_snapshots(endpoint, _payload()),
        error=GatewayError("HTTP 503", connector_id="webhook:wh-1", status_code=503),
        kind="webhook",
    )
    assert entry.dedupe_key == "dlv-1:-:wh-1"

    result = await service.replay(entry.id)

    assert result.status == "resolved"
    assert json.loads(seen[0].content)["delivery_id"] == "dlv-1"
    assert store.deliveries[-1].attempt == 2


@pytest.mark.asyncio
async def test_redeliver_to_disabled_endpoint_fails(store: InMemoryPipelineStore) -> None:
    endpoint = make_webhook(status="disabled")
    store.webhooks[endpoint.id] = endpoint
    redeliver = build_redeliver(gateway=_gateway(200), store=store)
    service = DeadLetterService(store, webhook_redeliver=redeliver)
    entry = await service.escalate(
        **dead_letter_snapshots(endpoint, _payload()),
        error=RuntimeError("x"),
        kind="webhook",
    )

    with pytest.raises(WebhookNotFoundError):
        await redeliver(entry)
    result = await service.replay(entry.id)
    assert result.status == "retry_scheduled"
    assert result.entry.last_error["type"] == "WebhookNotFoundError"
