from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Literal
from uuid import uuid4

from integrationhub.core.config import get_settings
from integrationhub.core.errors import DeadLetterNotFoundError, DeadLetterStateError, IntegrationHubError
from integrationhub.domain.models import DeadLetterEntry
from integrationhub.domain.pipeline import ActionSpec, EventJobPayload
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.pipeline.runner import ActionRunner
from integrationhub.services.redaction import error_detail, error_summary, sanitize_metadata
from integrationhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DeadLetterKind = Literal["action", "webhook"]
ReplayStatus = Literal["noop", "in_progress", "resolved", "retry_scheduled", "failed"]

TERMINAL_STATUSES = frozenset({"resolved", "failed", "ignored"})
# Delay before the next automatic replay, indexed by failure_count - 1; the last step repeats.
RETRY_LADDER = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=4),
    timedelta(hours=12),
)

WebhookRedeliver = Callable[[DeadLetterEntry], Awaitable[Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_delay_for(failure_count: int) -> timedelta:
    index = min(max(failure_count, 1), len(RETRY_LADDER)) - 1
    return RETRY_LADDER[index]


def dedupe_key(event_id: str, trigger_id: str | None, action_id: str) -> str:
    return f"{event_id}:{trigger_id or '-'}:{action_id}"


def is_terminal(entry: DeadLetterEntry) -> bool:
    return entry.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ReplayResult:
    status: ReplayStatus
    entry: DeadLetterEntry


class DeadLetterService:
    """Owns dead-letter escalation and replay for action and webhook failures."""

    def __init__(
        self,
        store: PipelineStore,
        runner: ActionRunner | None = None,
        *,
        webhook_redeliver: WebhookRedeliver | None = None,
        clock: Callable[[], datetime] = _utc_now,
        max_failures: int | None = None,
        lease_seconds: int | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._webhook_redeliver = webhook_redeliver
        self._clock = clock
        self._max_failures = max_failures or get_settings().dlq_max_failures
        self._lease = timedelta(seconds=lease_seconds or get_settings().dlq_replay_lease_seconds)

    async def escalate(
        self,
        *,
        event_snapshot: dict[str, Any],
        trigger_snapshot: dict[str, Any] | None,
        action_snapshot: dict[str, Any],
        error: BaseException,
        kind: DeadLetterKind = "action",
    ) -> DeadLetterEntry:
        event_id = str(event_snapshot["event_id"])
        trigger_id = trigger_snapshot.get("id") if trigger_snapshot else None
        action_id = str(action_snapshot["id"])
        key = dedupe_key(event_id, trigger_id, action_id)
        now = self._clock()
        entry = await self._store.upsert_dead_letter(
            {
                "id": uuid4().hex,
                "tenant_id": str(event_snapshot["tenant_id"]),
                "kind": kind,
                "event_id": event_id,
                "trigger_id": trigger_id,
                "action_id": action_id,
                "dedupe_key": key,
                "status": "pending",
                "failure_count": 1,
                "failure_reason": error_summary(error),
                "last_error": error_detail(error),
                "event_snapshot": copy.deepcopy(event_snapshot),
                "trigger_snapshot": copy.deepcopy(trigger_snapshot),
                "action_snapshot": copy.deepcopy(action_snapshot),
                "retry_after": now + retry_delay_for(1),
            }
        )
        if is_terminal(entry):
            logger.info("dead_letter_escalation_ignored id=%s status=%s", entry.id, entry.status)
            return entry
        if entry.failure_count > 1:
            entry = await self._store.update_dead_letter(
                entry.id, retry_after=now + retry_delay_for(entry.failure_count)
            ) or entry
        increment_counter("dlq_escalations_total")
        logger.warning(
            "dead_letter_escalated id=%s kind=%s dedupe_key=%s failure_count=%s",
            entry.id,
            kind,
            key,
            entry.failure_count,
        )
        return entry

    async def get(self, entry_id: str) -> DeadLetterEntry:
        entry = await self._store.get_dead_letter(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"dead-letter entry {entry_id} not found")
        return entry

    async def list_entries(
        self, *, tenant_id: str, status: str | None = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        return await self._store.list_dead_letters(tenant_id=tenant_id, status=status, limit=limit)

    async def due_entries(self, *, now: datetime | None = None, limit: int = 50) -> list[DeadLetterEntry]:
        return await self._store.due_dead_letters(now=now or self._clock(), limit=limit)

    async def stats(self, *, tenant_id: str) -> dict[str, int]:
        return await self._store.dead_letter_stats(tenant_id=tenant_id)

    async def ignore(self, entry_id: str) -> DeadLetterEntry:
        entry = await self.get(entry_id)
        if is_terminal(entry):
            return entry
        updated = await self._store.update_dead_letter(entry_id, status="ignored", retry_after=None)
        logger.info("dead_letter_ignored id=%s", entry_id)
        return updated or entry

    async def remove(self, entry_id: str, *, force: bool = False) -> None:
        entry = await self.get(entry_id)
        if not force and not is_terminal(entry):
            raise DeadLetterStateError(f"dead-letter entry {entry_id} is still pending")
        await self._store.delete_dead_letter(entry_id)
        logger.info("dead_letter_removed id=%s forced=%s", entry_id, force)

    async def cleanup(self, *, retention_days: int | None = None) -> int:
        days = retention_days if retention_days is not None else get_settings().dlq_retention_days
        removed = await self._store.delete_resolved_dead_letters(before=self._clock() - timedelta(days=days))
        logger.info("dead_letter_cleanup removed=%s retention_days=%s", removed, days)
        return removed

    async def replay(self, entry_id: str) -> ReplayResult:
        entry = await self.get(entry_id)
        if is_terminal(entry):
            return ReplayResult(status="noop", entry=entry)
        now = self._clock()
        if not await self._store.claim_dead_letter(entry.id, now=now, lease_until=now + self._lease):
            # Another replay holds the entry, or it went terminal after the read above.
            current = await self.get(entry_id)
            status: ReplayStatus = "noop" if is_terminal(current) else "in_progress"
            logger.info("dead_letter_replay_skipped id=%s status=%s", entry.id, status)
            return ReplayResult(status=status, entry=current)
        # Re-read under the claim so the failure count below builds on the latest write.
        entry = await self.get(entry_id)
        try:
            await self._redeliver(entry)
        except Exception as exc:  # noqa: BLE001 - replay failures are recorded on the entry.
            return await self._record_replay_failure(entry, exc, now=now)
        resolved = await self._store.update_dead_letter(
            entry.id,
            status="resolved",
            resolved_at=now,
            last_retry_at=now,
            retry_after=None,
            claimed_until=None,
        )
        increment_counter("dlq_replay_success_total")
        logger.info("dead_letter_resolved id=%s kind=%s", entry.id, entry.kind)
        return ReplayResult(status="resolved", entry=resolved or entry)

    async def bulk_replay(self, entry_ids: Iterable[str], *, max_concurrency: int = 3) -> dict[str, ReplayStatus]:
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def _one(entry_id: str) -> tuple[str, ReplayStatus]:
            async with semaphore:
                result = await self.replay(entry_id)
                return entry_id, result.status

        # Duplicate ids would race each other for the same entry.
        unique_ids = list(dict.fromkeys(entry_ids))
        results = await asyncio.gather(*(_one(entry_id) for entry_id in unique_ids))
        return dict(results)

    async def _redeliver(self, entry: DeadLetterEntry) -> None:
        if entry.kind == "webhook":
            if self._webhook_redeliver is None:
                raise IntegrationHubError("webhook redelivery is not configured")
            await self._webhook_redeliver(entry)
            return
        if self._runner is None:
            raise IntegrationHubError("action replay is not configured")
        # Frozen snapshots only; the live trigger may have changed since the failure.
        event = EventJobPayload.model_validate(entry.event_snapshot)
        action = ActionSpec.from_snapshot(entry.action_snapshot)
        response = await self._runner.invoke(action, event)
        execution = await self._store.latest_execution(event_id=entry.event_id, action_id=entry.action_id)
        if execution is not None:
            await self._store.complete_execution(
                execution.id, status="success", response=sanitize_metadata(response)
            )

    async def _record_replay_failure(
        self, entry: DeadLetterEntry, exc: BaseException, *, now: datetime
    ) -> ReplayResult:
        failure_count = entry.failure_count + 1
        values: dict[str, Any] = {
            "failure_count": failure_count,
            "failure_reason": error_summary(exc),
            "last_error": error_detail(exc),
            "last_retry_at": now,
            "claimed_until": None,
        }
        status: ReplayStatus
        if failure_count >= self._max_failures:
            values.update(status="failed", retry_after=None)
            status = "failed"
        else:
            values["retry_after"] = now + retry_delay_for(failure_count)
            status = "retry_scheduled"
        updated = await self._store.update_dead_letter(entry.id, **values)
        increment_counter("dlq_replay_failure_total")
        logger.warning(
            "dead_letter_replay_failed id=%s failure_count=%s status=%s error=%s",
            entry.id,
            failure_count,
            status,
            type(exc).__name__,
        )
        return ReplayResult(status=status, entry=updated or entry)
