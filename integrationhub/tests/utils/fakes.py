from __future__ import annotations

import asyncio
import fnmatch
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx

from integrationhub.domain.models import (
    ActionExecution,
    Connector,
    DeadLetterEntry,
    PushJobRecord,
    WebhookDelivery,
    WebhookEndpoint,
)
from integrationhub.domain.pipeline import ActionSpec, EventJobPayload, TriggerSpec
from integrationhub.persistence.repos.dead_letters import DEAD_LETTER_STATUSES


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FakeRedis:
    """The redis.asyncio subset used for circuit and rate-limit state."""

    def __init__(self, *, fail: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, name: str) -> str | None:
        self._check()
        return self.values.get(name)

    async def set(self, name: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.values[name] = value
        if ex is not None:
            self.ttls[name] = ex
        return True

    async def delete(self, *names: str) -> int:
        self._check()
        removed = 0
        for name in names:
            removed += int(self.values.pop(name, None) is not None)
            removed += int(self.zsets.pop(name, None) is not None)
            self.ttls.pop(name, None)
        return removed

    async def zadd(self, name: str, mapping: dict[str, float]) -> int:
        self._check()
        members = self.zsets.setdefault(name, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    async def zcard(self, name: str) -> int:
        self._check()
        return len(self.zsets.get(name, {}))

    async def zremrangebyscore(self, name: str, min: float, max: float) -> int:
        self._check()
        members = self.zsets.get(name, {})
        doomed = [member for member, score in members.items() if min <= score <= max]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def expire(self, name: str, time: int) -> bool:
        self._check()
        self.ttls[name] = time
        return True

    def keys(self, pattern: str = "*") -> list[str]:
        return [key for key in [*self.values, *self.zsets] if fnmatch.fnmatch(key, pattern)]


class RecordingExecutor:
    """ActionExecutor that records calls and can fail per action type."""

    def __init__(self, failures: dict[str, BaseException] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.failures = dict(failures or {})

    async def execute(self, action_type: str, config: dict[str, Any], event_data: dict[str, Any]) -> Any:
        self.calls.append((action_type, config, event_data))
        failure = self.failures.get(action_type)
        if failure is not None:
            raise failure
        return {"ok": True, "action_type": action_type}


class InMemoryPipelineStore:
    """PipelineStore backed by dicts of ORM instances."""

    def __init__(self) -> None:
        self.triggers: list[TriggerSpec] = []
        self.executions: dict[tuple[str, str, int], ActionExecution] = {}
        self.dead_letters: dict[str, DeadLetterEntry] = {}
        self.webhooks: dict[str, WebhookEndpoint] = {}
        self.deliveries: list[WebhookDelivery] = []
        self.connectors: dict[str, Connector] = {}
        self.push_records: dict[str, PushJobRecord] = {}

    async def list_active_triggers(self, *, tenant_id: str, event_type: str) -> list[TriggerSpec]:
        matches = [
            trigger
            for trigger in self.triggers
            if trigger.tenant_id == tenant_id and trigger.event_type == event_type and trigger.status == "active"
        ]
        return sorted(matches, key=lambda trigger: trigger.priority, reverse=True)

    async def create_execution(
        self, *, event_id: str, tenant_id: str, trigger_id: str, action_id: str, attempt: int
    ) -> ActionExecution:
        key = (event_id, action_id, attempt)
        existing = self.executions.get(key)
        if existing is not None:
            return existing
        row = ActionExecution(
            id=uuid4().hex,
            tenant_id=tenant_id,
            event_id=event_id,
            trigger_id=trigger_id,
            action_id=action_id,
            attempt=attempt,
            status="pending",
            response=None,
            error=None,
            started_at=_utc_now(),
            completed_at=None,
        )
        self.executions[key] = row
        return row

    async def complete_execution(
        self,
        execution_id: str,
        *,
        status: str,
        response: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        for row in self.executions.values():
            if row.id == execution_id:
                row.status = status
                row.response = response
                row.error = error
                row.completed_at = _utc_now()

    async def latest_execution(self, *, event_id: str, action_id: str) -> ActionExecution | None:
        rows = [row for (e_id, a_id, _), row in self.executions.items() if e_id == event_id and a_id == action_id]
        return max(rows, key=lambda row: row.attempt, default=None)

    def executions_for(self, event_id: str) -> list[ActionExecution]:
        return [row for (e_id, _, _), row in self.executions.items() if e_id == event_id]

    async def upsert_dead_letter(self, values: dict[str, Any]) -> DeadLetterEntry:
        for entry in self.dead_letters.values():
            if entry.dedupe_key == values["dedupe_key"]:
                if entry.status == "pending":
                    entry.failure_count += 1
                    entry.last_error = values["last_error"]
                    entry.failure_reason = values["failure_reason"]
                    entry.updated_at = _utc_now()
                return entry
        now = _utc_now()
        entry = DeadLetterEntry(
            **values, last_retry_at=None, resolved_at=None, claimed_until=None, created_at=now, updated_at=now
        )
        self.dead_letters[entry.id] = entry
        return entry

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        return self.dead_letters.get(entry_id)

    async def list_dead_letters(
        self, *, tenant_id: str, status: str | None = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        rows = [
            entry
            for entry in self.dead_letters.values()
            if entry.tenant_id == tenant_id and (status is None or entry.status == status)
        ]
        return rows[:limit]

    async def due_dead_letters(self, *, now: datetime, limit: int) -> list[DeadLetterEntry]:
        rows = [
            entry
            for entry in self.dead_letters.values()
            if entry.status == "pending"
            and (entry.retry_after is None or entry.retry_after <= now)
            and (entry.claimed_until is None or entry.claimed_until <= now)
        ]
        return rows[:limit]

    async def update_dead_letter(self, entry_id: str, **values: Any) -> DeadLetterEntry | None:
        entry = self.dead_letters.get(entry_id)
        if entry is None:
            return None
        for key, value in values.items():
            setattr(entry, key, value)
        entry.updated_at = _utc_now()
        return entry

    async def claim_dead_letter(self, entry_id: str, *, now: datetime, lease_until: datetime) -> bool:
        entry = self.dead_letters.get(entry_id)
        if entry is None or entry.status != "pending":
            return False
        if entry.claimed_until is not None and entry.claimed_until > now:
            return False
        entry.claimed_until = lease_until
        return True

    async def delete_dead_letter(self, entry_id: str) -> bool:
        return self.dead_letters.pop(entry_id, None) is not None

    async def dead_letter_stats(self, *, tenant_id: str) -> dict[str, int]:
        stats = {status: 0 for status in DEAD_LETTER_STATUSES}
        for entry in self.dead_letters.values():
            if entry.tenant_id == tenant_id:
                stats[entry.status] += 1
        return stats

    async def delete_resolved_dead_letters(self, *, before: datetime) -> int:
        doomed = [
            entry.id
            for entry in self.dead_letters.values()
            if entry.status == "resolved" and entry.resolved_at is not None and entry.resolved_at < before
        ]
        for entry_id in doomed:
            del self.dead_letters[entry_id]
        return len(doomed)

    async def find_webhooks(
        self, *, tenant_id: str, event: str, form_id: str | None = None
    ) -> list[WebhookEndpoint]:
        return [
            endpoint
            for endpoint in self.webhooks.values()
            if endpoint.tenant_id == tenant_id
            and endpoint.status == "active"
            and event in (endpoint.events or [])
            and (form_id is None or endpoint.form_id in (None, form_id))
        ]

    async def get_webhook(self, webhook_id: str) -> WebhookEndpoint | None:
        return self.webhooks.get(webhook_id)

    async def record_webhook_delivery(self, values: dict[str, Any]) -> None:
        self.deliveries.append(WebhookDelivery(**values))

    async def update_webhook_health(
        self, webhook_id: str, *, success: bool, degraded_after: int, disable_after: int
    ) -> WebhookEndpoint | None:
        endpoint = self.webhooks.get(webhook_id)
        if endpoint is None:
            return None
        if success:
            endpoint.consecutive_failures = 0
            endpoint.health_status = "healthy"
            endpoint.last_success_at = _utc_now()
            endpoint.success_count += 1
            return endpoint
        endpoint.consecutive_failures += 1
        endpoint.failure_count += 1
        if endpoint.consecutive_failures >= disable_after:
            endpoint.health_status = "unhealthy"
            endpoint.status = "disabled"
        elif endpoint.consecutive_failures >= degraded_after:
            endpoint.health_status = "degraded"
        return endpoint

    async def get_connector(self, connector_id: str) -> Connector | None:
        return self.connectors.get(connector_id)

    async def create_push_record(self, values: dict[str, Any]) -> PushJobRecord:
        record = PushJobRecord(
            status_code=None,
            erp_record_id=None,
            error=None,
            duration_ms=None,
            **values,
        )
        self.push_records[record.id] = record
        return record

    async def update_push_record(self, record_id: str, **values: Any) -> None:
        record = self.push_records[record_id]
        for key, value in values.items():
            setattr(record, key, value)


def make_event(**overrides: Any) -> EventJobPayload:
    values: dict[str, Any] = {
        "event_id": "evt-1",
        "tenant_id": "tenant-a",
        "event_type": "form.submitted",
        "source_type": "form",
        "source_id": "form-1",
        "data": {"amount": 150, "email": "lead@example.com", "customer": {"tier": "gold"}},
    }
    values.update(overrides)
    return EventJobPayload(**values)


def make_action(action_id: str = "act-1", **overrides: Any) -> ActionSpec:
    values: dict[str, Any] = {
        "id": action_id,
        "trigger_id": "trg-1",
        "action_type": "send_email",
        "position": 0,
        "config": {"to": "{{event.data.email}}"},
    }
    values.update(overrides)
    return ActionSpec(**values)


def make_trigger(trigger_id: str = "trg-1", *, actions: tuple[ActionSpec, ...] = (), **overrides: Any) -> TriggerSpec:
    values: dict[str, Any] = {
        "id": trigger_id,
        "tenant_id": "tenant-a",
        "event_type": "form.submitted",
        "name": trigger_id,
    }
    values.update(overrides)
    return TriggerSpec(actions=actions, **values)


def make_webhook(webhook_id: str = "wh-1", **overrides: Any) -> WebhookEndpoint:
    values: dict[str, Any] = {
        "id": webhook_id,
        "tenant_id": "tenant-a",
        "url": "https://hooks.example.com/receive",
        "secret": "whsec-test",
        "events": ["form.submitted"],
        "form_id": None,
        "status": "active",
        "health_status": "unknown",
        "consecutive_failures": 0,
        "success_count": 0,
        "failure_count": 0,
        "last_success_at": None,
    }
    values.update(overrides)
    return WebhookEndpoint(**values)


def make_connector(connector_id: str = "erp-1", **overrides: Any) -> Connector:
    values: dict[str, Any] = {
        "id": connector_id,
        "tenant_id": "tenant-a",
        "name": "Priority ERP",
        "base_url": "https://erp.example.com/api/",
        "enabled": True,
        "auth_type": "basic",
        "credentials": {"username": "svc", "password": "hunter2"},
        "rate_limit_max_requests": None,
        "rate_limit_window_ms": None,
        "field_mappings": [],
    }
    values.update(overrides)
    return Connector(**values)


class FakeClock:
    """Manually advanced wall clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Upstream:
    """MockTransport handler that replays scripted responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SlowUpstream:
    """Async handler that hangs on scripted calls and answers the rest."""

    def __init__(self, *script: str) -> None:
        self.script = list(script)
        self.calls = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if step == "hang":
            await asyncio.sleep(30)
        return httpx.Response(200, json={"ok": True})
