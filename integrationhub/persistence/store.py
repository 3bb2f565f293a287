from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from integrationhub.domain.models import (
    ActionExecution,
    Connector,
    DeadLetterEntry,
    PushJobRecord,
    WebhookEndpoint,
)
from integrationhub.domain.pipeline import TriggerSpec
from integrationhub.persistence.repos import connectors as connector_repo
from integrationhub.persistence.repos import dead_letters as dead_letter_repo
from integrationhub.persistence.repos import executions as execution_repo
from integrationhub.persistence.repos import triggers as trigger_repo
from integrationhub.persistence.repos import webhooks as webhook_repo


class PipelineStore(Protocol):
    """Row-level persistence consumed by the pipeline, dead-letter, webhook and push services."""

    async def list_active_triggers(self, *, tenant_id: str, event_type: str) -> list[TriggerSpec]: ...

    async def create_execution(
        self, *, event_id: str, tenant_id: str, trigger_id: str, action_id: str, attempt: int
    ) -> ActionExecution: ...

    async def complete_execution(
        self,
        execution_id: str,
        *,
        status: str,
        response: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None: ...

    async def latest_execution(self, *, event_id: str, action_id: str) -> ActionExecution | None: ...

    async def upsert_dead_letter(self, values: dict[str, Any]) -> DeadLetterEntry: ...

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None: ...

    async def list_dead_letters(
        self, *, tenant_id: str, status: str | None = None, limit: int = 100
    ) -> list[DeadLetterEntry]: ...

    async def due_dead_letters(self, *, now: datetime, limit: int) -> list[DeadLetterEntry]: ...

    async def update_dead_letter(self, entry_id: str, **values: Any) -> DeadLetterEntry | None: ...

    async def claim_dead_letter(self, entry_id: str, *, now: datetime, lease_until: datetime) -> bool: ...

    async def delete_dead_letter(self, entry_id: str) -> bool: ...

    async def dead_letter_stats(self, *, tenant_id: str) -> dict[str, int]: ...

    async def delete_resolved_dead_letters(self, *, before: datetime) -> int: ...

    async def find_webhooks(
        self, *, tenant_id: str, event: str, form_id: str | None = None
    ) -> list[WebhookEndpoint]: ...

    async def get_webhook(self, webhook_id: str) -> WebhookEndpoint | None: ...

    async def record_webhook_delivery(self, values: dict[str, Any]) -> None: ...

    async def update_webhook_health(
        self, webhook_id: str, *, success: bool, degraded_after: int, disable_after: int
    ) -> WebhookEndpoint | None: ...

    async def get_connector(self, connector_id: str) -> Connector | None: ...

    async def create_push_record(self, values: dict[str, Any]) -> PushJobRecord: ...

    async def update_push_record(self, record_id: str, **values: Any) -> None: ...


class SqlPipelineStore:
    """PipelineStore over SQLAlchemy; one short transaction per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from integrationhub.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory

    async def list_active_triggers(self, *, tenant_id: str, event_type: str) -> list[TriggerSpec]:
        async with self._session_factory() as session:
            return await trigger_repo.list_active_triggers(session, tenant_id=tenant_id, event_type=event_type)

    async def create_execution(
        self, *, event_id: str, tenant_id: str, trigger_id: str, action_id: str, attempt: int
    ) -> ActionExecution:
        async with self._session_factory() as session:
            row = await execution_repo.create_execution(
                session,
                event_id=event_id,
                tenant_id=tenant_id,
                trigger_id=trigger_id,
                action_id=action_id,
                attempt=attempt,
            )
            await session.commit()
            return row

    async def complete_execution(
        self,
        execution_id: str,
        *,
        status: str,
        response: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await execution_repo.complete_execution(
                session, execution_id=execution_id, status=status, response=response, error=error
            )
            await session.commit()

    async def latest_execution(self, *, event_id: str, action_id: str) -> ActionExecution | None:
        async with self._session_factory() as session:
            return await execution_repo.latest_execution(session, event_id=event_id, action_id=action_id)

    async def upsert_dead_letter(self, values: dict[str, Any]) -> DeadLetterEntry:
        async with self._session_factory() as session:
            row = await dead_letter_repo.upsert_dead_letter(session, values=values)
            await session.commit()
            return row

    async def get_dead_letter(self, entry_id: str) -> DeadLetterEntry | None:
        async with self._session_factory() as session:
            return await dead_letter_repo.get_dead_letter(session, entry_id)

    async def list_dead_letters(
        self, *, tenant_id: str, status: str | None = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        async with self._session_factory() as session:
            return await dead_letter_repo.list_dead_letters(session, tenant_id=tenant_id, status=status, limit=limit)

    async def due_dead_letters(self, *, now: datetime, limit: int) -> list[DeadLetterEntry]:
        async with self._session_factory() as session:
            return await dead_letter_repo.due_dead_letters(session, now=now, limit=limit)

    async def update_dead_letter(self, entry_id: str, **values: Any) -> DeadLetterEntry | None:
        async with self._session_factory() as session:
            row = await dead_letter_repo.update_dead_letter(session, entry_id, values)
            await session.commit()
            return row

    async def claim_dead_letter(self, entry_id: str, *, now: datetime, lease_until: datetime) -> bool:
        async with self._session_factory() as session:
            claimed = await dead_letter_repo.claim_dead_letter(
                session, entry_id, now=now, lease_until=lease_until
            )
            await session.commit()
            return claimed

    async def delete_dead_letter(self, entry_id: str) -> bool:
        async with self._session_factory() as session:
            deleted = await dead_letter_repo.delete_dead_letter(session, entry_id)
            await session.commit()
            return deleted

    async def dead_letter_stats(self, *, tenant_id: str) -> dict[str, int]:
        async with self._session_factory() as session:
            return await dead_letter_repo.dead_letter_stats(session, tenant_id=tenant_id)

    async def delete_resolved_dead_letters(self, *, before: datetime) -> int:
        async with self._session_factory() as session:
            deleted = await dead_letter_repo.delete_resolved_before(session, before=before)
            await session.commit()
            return deleted

    async def find_webhooks(
        self, *, tenant_id: str, event: str, form_id: str | None = None
    ) -> list[WebhookEndpoint]:
        async with self._session_factory() as session:
            return await webhook_repo.find_webhooks_for_event(
                session, tenant_id=tenant_id, event=event, form_id=form_id
            )

    async def get_webhook(self, webhook_id: str) -> WebhookEndpoint | None:
        async with self._session_factory() as session:
            return await webhook_repo.get_webhook(session, webhook_id)

    async def record_webhook_delivery(self, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            await webhook_repo.record_delivery(session, values=values)
            await session.commit()

    async def update_webhook_health(
        self, webhook_id: str, *, success: bool, degraded_after: int, disable_after: int
    ) -> WebhookEndpoint | None:
        async with self._session_factory() as session:
            endpoint = await webhook_repo.update_health(
                session,
                webhook_id=webhook_id,
                success=success,
                degraded_after=degraded_after,
                disable_after=disable_after,
            )
            await session.commit()
            return endpoint

    async def get_connector(self, connector_id: str) -> Connector | None:
        async with self._session_factory() as session:
            return await connector_repo.get_connector(session, connector_id)

    async def create_push_record(self, values: dict[str, Any]) -> PushJobRecord:
        async with self._session_factory() as session:
            record = await connector_repo.create_push_record(session, values=values)
            await session.commit()
            return record

    async def update_push_record(self, record_id: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await connector_repo.update_push_record(session, record_id, values)
            await session.commit()
