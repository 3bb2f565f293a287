from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from integrationhub.core.errors import DeadLetterNotFoundError, DeadLetterStateError
from integrationhub.services.dead_letters import DeadLetterService, dedupe_key, retry_delay_for
from integrationhub.services.pipeline import ActionDispatcher, ActionRunner, process_event
from integrationhub.tests.utils.fakes import (
    InMemoryPipelineStore,
    RecordingExecutor,
    make_action,
    make_event,
    make_trigger,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _service(store: InMemoryPipelineStore, executor: RecordingExecutor | None = None, **kwargs) -> DeadLetterService:
    dispatcher = ActionDispatcher(gateway=None, executor=executor or RecordingExecutor())
    return DeadLetterService(store, ActionRunner(store, dispatcher), clock=lambda: NOW, **kwargs)


async def _escalate(service: DeadLetterService, error: BaseException | None = None):
    event = make_event()
    action = make_action("a-1", action_type="update_crm", is_critical=True)
    return await service.escalate(
        event_snapshot=event.snapshot(),
        trigger_snapshot=make_trigger().snapshot(),
        action_snapshot=action.snapshot(),
        error=error or RuntimeError("crm down"),
    )


def test_retry_ladder_repeats_last_step() -> None:
    assert retry_delay_for(0) == timedelta(minutes=1)
    assert retry_delay_for(1) == timedelta(minutes=1)
    assert retry_delay_for(2) == timedelta(minutes=5)
    assert retry_delay_for(6) == timedelta(hours=12)
    assert retry_delay_for(40) == timedelta(hours=12)
    assert dedupe_key("e", None, "a") == "e:-:a"


@pytest.mark.asyncio
async def test_escalating_same_failure_twice_increments_one_entry(store: InMemoryPipelineStore) -> None:
    service = _service(store)

    first = await _escalate(service)
    assert first.retry_after == NOW + timedelta(minutes=1)
    second = await _escalate(service, RuntimeError("still down"))

    assert second.id == first.id
    assert len(store.dead_letters) == 1
    assert second.failure_count == 2
    assert second.retry_after == NOW + timedelta(minutes=5)
    assert "still down" in second.failure_reason


@pytest.mark.asyncio
async def test_escalation_into_terminal_entry_is_ignored(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    entry = await _escalate(service)
    await service.ignore(entry.id)

    again = await _escalate(service)

    assert again.status == "ignored"
    assert again.failure_count == 1


@pytest.mark.asyncio
async def test_snapshots_are_owned_copies(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    action_snapshot = make_action("a-1", config={"to": "x"}).snapshot()
    entry = await service.escalate(
        event_snapshot=make_event().snapshot(),
        trigger_snapshot=None,
        action_snapshot=action_snapshot,
        error=RuntimeError("boom"),
    )
    action_snapshot["config"]["to"] = "changed"

    assert entry.action_snapshot["config"]["to"] == "x"
    assert entry.dedupe_key == "evt-1:-:a-1"


@pytest.mark.asyncio
async def test_replay_resolves_entry_and_marks_execution_success(store: InMemoryPipelineStore) -> None:
    executor = RecordingExecutor(failures={"update_crm": RuntimeError("crm down")})
    store.triggers.append(make_trigger(actions=(make_action("a-1", action_type="update_crm", is_critical=True),)))
    service = _service(store, executor)
    dispatcher = ActionDispatcher(gateway=None, executor=executor)
    await process_event(make_event(), store=store, dispatcher=dispatcher, dead_letters=service, attempt=1)
    [entry] = store.dead_letters.values()
    [execution] = store.executions_for("evt-1")
    assert execution.status == "failed"

    executor.failures.clear()
    result = await service.replay(entry.id)

    assert result.status == "resolved"
    assert result.entry.resolved_at == NOW
    assert result.entry.retry_after is None
    assert execution.status == "success"
    assert execution.response == {"ok": True, "action_type": "update_crm"}
    assert (await service.replay(entry.id)).status == "noop"


@pytest.mark.asyncio
async def test_replay_uses_frozen_snapshot_not_live_trigger(store: InMemoryPipelineStore) -> None:
    executor = RecordingExecutor()
    service = _service(store, executor)
    entry = await _escalate(service)
    store.triggers.clear()

    result = await service.replay(entry.id)

    assert result.status == "resolved"
    assert executor.calls[0][0] == "update_crm"
    assert executor.calls[0][2]["email"] == "lead@example.com"


@pytest.mark.asyncio
async def test_repeated_replay_failures_walk_ladder_then_fail(store: InMemoryPipelineStore) -> None:
    executor = RecordingExecutor(failures={"update_crm": RuntimeError("crm down")})
    service = _service(store, executor)
    entry = await _escalate(service)

    statuses = []
    for _ in range(4):
        result = await service.replay(entry.id)
        statuses.append((result.status, result.entry.failure_count))

    assert statuses == [
        ("retry_scheduled", 2),
        ("retry_scheduled", 3),
        ("retry_scheduled", 4),
        ("failed", 5),
    ]
    final = await service.get(entry.id)
    assert final.retry_after is None
    assert final.last_retry_at == NOW
    assert final.last_error["message"] == "crm down"
    assert (await service.replay(entry.id)).status == "noop"


@pytest.mark.asyncio
async def test_scheduled_retry_uses_ladder_delay(store: InMemoryPipelineStore) -> None:
    service = _service(store, RecordingExecutor(failures={"update_crm": RuntimeError("down")}))
    entry = await _escalate(service)

    result = await service.replay(entry.id)

    assert result.entry.retry_after == NOW + timedelta(minutes=5)
    assert await service.due_entries(now=NOW) == []
    assert [e.id for e in await service.due_entries(now=NOW + timedelta(minutes=5))] == [entry.id]


@pytest.mark.asyncio
async def test_webhook_entries_use_redeliver_hook(store: InMemoryPipelineStore) -> None:
    redelivered = []

    async def redeliver(entry):
        redelivered.append(entry.action_id)

    service = DeadLetterService(store, webhook_redeliver=redeliver, clock=lambda: NOW)
    entry = await service.escalate(
        event_snapshot={"event_id": "dlv-1", "tenant_id": "tenant-a", "payload": {}},
        trigger_snapshot=None,
        action_snapshot={"id": "wh-1", "action_type": "webhook"},
        error=RuntimeError("503"),
        kind="webhook",
    )

    result = await service.replay(entry.id)

    assert result.status == "resolved"
    assert redelivered == ["wh-1"]


@pytest.mark.asyncio
async def test_bulk_replay_reports_each_entry(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    entry = await _escalate(service)
    ignored = await service.escalate(
        event_snapshot=make_event(event_id="evt-2").snapshot(),
        trigger_snapshot=None,
        action_snapshot=make_action("a-9").snapshot(),
        error=RuntimeError("x"),
    )
    await service.ignore(ignored.id)

    results = await service.bulk_replay([entry.id, ignored.id], max_concurrency=2)

    assert results == {entry.id: "resolved", ignored.id: "noop"}


class GatedExecutor(RecordingExecutor):
    """Holds every call until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def execute(self, action_type, config, event_data):
        self.started.set()
        await self.gate.wait()
        return await super().execute(action_type, config, event_data)


@pytest.mark.asyncio
async def test_concurrent_replays_deliver_once(store: InMemoryPipelineStore) -> None:
    executor = GatedExecutor()
    service = _service(store, executor)
    entry = await _escalate(service)

    first = asyncio.create_task(service.replay(entry.id))
    await executor.started.wait()
    second = await service.replay(entry.id)
    executor.gate.set()
    resolved = await first

    assert second.status == "in_progress"
    assert resolved.status == "resolved"
    assert len(executor.calls) == 1
    assert (await service.get(entry.id)).claimed_until is None


@pytest.mark.asyncio
async def test_failed_replay_releases_claim_and_keeps_every_increment(store: InMemoryPipelineStore) -> None:
    executor = RecordingExecutor(failures={"update_crm": RuntimeError("crm down")})
    service = _service(store, executor)
    entry = await _escalate(service)

    await service.replay(entry.id)
    await service.replay(entry.id)

    current = await service.get(entry.id)
    assert current.failure_count == 3
    assert current.claimed_until is None
    assert len(executor.calls) == 2


@pytest.mark.asyncio
async def test_lapsed_claim_can_be_taken_again(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    entry = await _escalate(service)
    stored = store.dead_letters[entry.id]
    stored.retry_after = None
    stored.claimed_until = NOW + timedelta(minutes=1)

    assert (await service.replay(entry.id)).status == "in_progress"
    assert await service.due_entries() == []

    stored.claimed_until = NOW - timedelta(seconds=1)
    assert [due.id for due in await service.due_entries()] == [entry.id]
    assert (await service.replay(entry.id)).status == "resolved"


@pytest.mark.asyncio
async def test_bulk_replay_ignores_duplicate_ids(store: InMemoryPipelineStore) -> None:
    executor = RecordingExecutor()
    service = _service(store, executor)
    entry = await _escalate(service)

    results = await service.bulk_replay([entry.id, entry.id, entry.id], max_concurrency=3)

    assert results == {entry.id: "resolved"}
    assert len(executor.calls) == 1


@pytest.mark.asyncio
async def test_remove_requires_force_for_pending_entries(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    entry = await _escalate(service)

    with pytest.raises(DeadLetterStateError):
        await service.remove(entry.id)
    await service.remove(entry.id, force=True)

    with pytest.raises(DeadLetterNotFoundError):
        await service.get(entry.id)


@pytest.mark.asyncio
async def test_stats_and_cleanup(store: InMemoryPipelineStore) -> None:
    service = _service(store)
    entry = await _escalate(service)
    await service.replay(entry.id)
    store.dead_letters[entry.id].resolved_at = NOW - timedelta(days=31)
    pending = await service.escalate(
        event_snapshot=make_event(event_id="evt-2").snapshot(),
        trigger_snapshot=None,
        action_snapshot=make_action("a-2").snapshot(),
        error=RuntimeError("x"),
    )

    assert await service.stats(tenant_id="tenant-a") == {"pending": 1, "resolved": 1, "failed": 0, "ignored": 0}
    assert await service.cleanup(retention_days=30) == 1
    assert list(store.dead_letters) == [pending.id]
