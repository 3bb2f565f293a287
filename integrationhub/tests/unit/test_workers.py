from __future__ import annotations

import httpx
import pytest
from arq import Retry

from integrationhub.core.errors import ValidationError
from integrationhub.services.gateway import OutboundGateway
from integrationhub.services.push import PushEndpoint, PushRequest
from integrationhub.services.resilience import CircuitBreakerConfig, RateLimitPolicy
from integrationhub.services.telemetry import counters_snapshot
from integrationhub.services.webhooks import WebhookPayload
from integrationhub.tests.utils.fakes import (
    FakeClock,
    FakeRedis,
    InMemoryPipelineStore,
    RecordingExecutor,
    SleepRecorder,
    make_action,
    make_connector,
    make_event,
    make_trigger,
    make_webhook,
)
from integrationhub.workers import dlq_worker
from integrationhub.workers.dlq_worker import enqueue_due_replays, replay_dead_letter
from integrationhub.workers.event_worker import process_event_job
from integrationhub.workers.push_worker import push_job
from integrationhub.workers.runtime import build_runtime
from integrationhub.workers.webhook_worker import deliver_webhook_job


def _ctx(store: InMemoryPipelineStore, *, status: int = 200, executor: RecordingExecutor | None = None, job_try: int = 1) -> dict:
    gateway = OutboundGateway(
        store=FakeRedis(),
        transport=httpx.MockTransport(lambda request: httpx.Response(status, json={"id": "R-1"})),
        sleep=SleepRecorder(),
        clock=FakeClock(),
        circuit_config=CircuitBreakerConfig(failure_threshold=50, cooldown_seconds=60, state_ttl_seconds=300),
        rate_limit_policy=RateLimitPolicy(max_requests=100, window_ms=60000),
    )
    runtime = build_runtime(store=store, gateway=gateway, executor=executor or RecordingExecutor())
    return {"runtime": runtime, "job_try": job_try}


def test_runtime_freezes_registries(store: InMemoryPipelineStore) -> None:
    runtime = _ctx(store)["runtime"]
    with pytest.raises(RuntimeError):
        runtime.dispatcher.register("fax", lambda action, event, config: None)


@pytest.mark.asyncio
async def test_event_job_succeeds(store: InMemoryPipelineStore) -> None:
    store.triggers.append(make_trigger(actions=(make_action("a-1"),)))

    summary = await process_event_job(_ctx(store), make_event().snapshot())

    assert summary == {"event_id": "evt-1", "matched": 1, "aborted": 0, "attempt": 1}
    assert counters_snapshot()["jobs_total.event.success"] == 1


@pytest.mark.asyncio
async def test_event_job_retries_transient_failures_with_backoff(store: InMemoryPipelineStore) -> None:
    store.triggers.append(make_trigger(actions=(make_action("a-1"),)))
    executor = RecordingExecutor(failures={"send_email": RuntimeError("smtp down")})

    with pytest.raises(Retry) as exc_info:
        await process_event_job(_ctx(store, executor=executor, job_try=2), make_event().snapshot())

    assert exc_info.value.defer_score == 2000
    assert store.dead_letters == {}


@pytest.mark.asyncio
async def test_event_job_final_try_escalates_and_drops(store: InMemoryPipelineStore) -> None:
    store.triggers.append(make_trigger(actions=(make_action("a-1"),)))
    executor = RecordingExecutor(failures={"send_email": RuntimeError("smtp down")})

    summary = await process_event_job(_ctx(store, executor=executor, job_try=3), make_event().snapshot())

    assert summary["aborted"] == 1
    assert len(store.dead_letters) == 1
    assert counters_snapshot()["jobs_total.event.dropped"] == 1


@pytest.mark.asyncio
async def test_event_job_does_not_retry_fatal_failures(store: InMemoryPipelineStore) -> None:
    store.triggers.append(make_trigger(actions=(make_action("a-1"),)))
    executor = RecordingExecutor(failures={"send_email": ValidationError("bad template")})

    summary = await process_event_job(_ctx(store, executor=executor), make_event().snapshot())

    assert summary["aborted"] == 1
    assert len(store.dead_letters) == 1


@pytest.mark.asyncio
async def test_webhook_job_retries_then_dead_letters(store: InMemoryPipelineStore) -> None:
    store.webhooks["wh-1"] = make_webhook()
    payload = WebhookPayload(delivery_id="dlv-1", event="form.submitted").model_dump(mode="json")

    with pytest.raises(Retry) as exc_info:
        await deliver_webhook_job(_ctx(store, status=503, job_try=1), "wh-1", payload)
    assert exc_info.value.defer_score == 30000

    summary = await deliver_webhook_job(_ctx(store, status=503, job_try=4), "wh-1", payload)

    assert summary == {"webhook_id": "wh-1", "delivered": False, "attempt": 4}
    [entry] = store.dead_letters.values()
    assert (entry.kind, entry.action_id, entry.event_id) == ("webhook", "wh-1", "dlv-1")
    assert [d.attempt for d in store.deliveries] == [1, 4]


@pytest.mark.asyncio
async def test_webhook_job_skips_inactive_endpoint(store: InMemoryPipelineStore) -> None:
    store.webhooks["wh-1"] = make_webhook(status="paused")
    payload = WebhookPayload(event="form.submitted").model_dump(mode="json")

    summary = await deliver_webhook_job(_ctx(store), "wh-1", payload)

    assert summary["delivered"] is False
    assert store.deliveries == []


@pytest.mark.asyncio
async def test_push_job_marks_record_failed_when_not_retryable(store: InMemoryPipelineStore) -> None:
    store.connectors["erp-1"] = make_connector()
    payload = PushRequest(
        record_id="rec-1", tenant_id="tenant-a", connector_id="erp-1", endpoint=PushEndpoint(path="ORDERS")
    ).model_dump(mode="json")

    summary = await push_job(_ctx(store, status=400), payload)

    assert summary["status"] == "failed"
    assert store.push_records["rec-1"].status == "failed"


@pytest.mark.asyncio
async def test_push_job_success_returns_erp_record(store: InMemoryPipelineStore) -> None:
    store.connectors["erp-1"] = make_connector()
    payload = PushRequest(
        record_id="rec-1", tenant_id="tenant-a", connector_id="erp-1", endpoint=PushEndpoint(path="ORDERS")
    ).model_dump(mode="json")

    summary = await push_job(_ctx(store), payload)

    assert summary == {"record_id": "rec-1", "status": "succeeded", "erp_record_id": "R-1", "attempt": 1}


@pytest.mark.asyncio
async def test_replay_job_and_scheduler(store: InMemoryPipelineStore, monkeypatch) -> None:
    ctx = _ctx(store)
    dead_letters = ctx["runtime"].dead_letters
    entry = await dead_letters.escalate(
        event_snapshot=make_event().snapshot(),
        trigger_snapshot=None,
        action_snapshot=make_action("a-1").snapshot(),
        error=RuntimeError("x"),
    )
    entry.retry_after = None
    enqueued: list[tuple[str, int]] = []

    async def fake_enqueue(entry_id: str, *, failure_count: int = 0, defer_by=None) -> str:
        enqueued.append((entry_id, failure_count))
        return f"dlq:{entry_id}:{failure_count}"

    monkeypatch.setattr(dlq_worker, "enqueue_dead_letter_replay", fake_enqueue)

    assert await enqueue_due_replays(dead_letters, limit=10) == 1
    assert enqueued == [(entry.id, 1)]
    assert await replay_dead_letter(ctx, entry.id) == "resolved"
    assert await replay_dead_letter(ctx, entry.id) == "noop"
    assert await replay_dead_letter(ctx, "missing-id") == "missing"
