from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from integrationhub.domain.models import ActionExecution


async def get_execution(
    session: AsyncSession, *, event_id: str, action_id: str, attempt: int
) -> ActionExecution | None:
    result = await session.execute(
        select(ActionExecution).where(
            ActionExecution.event_id == event_id,
            ActionExecution.action_id == action_id,
            ActionExecution.attempt == attempt,
        )
    )
    return result.scalar_one_or_none()


async def create_execution(
    session: AsyncSession,
    *,
    event_id: str,
    tenant_id: str,
    trigger_id: str,
    action_id: str,
    attempt: int,
) -> ActionExecution:
    # Insert-once per (event, action, attempt); a redelivered job reloads the existing row.
    stmt = insert(ActionExecution).values(
        id=uuid4().hex,
        event_id=event_id,
        tenant_id=tenant_id,
        trigger_id=trigger_id,
        action_id=action_id,
        attempt=attempt,
        status="pending",
    )
    stmt = stmt.on_conflict_do_nothing(constraint="uq_action_executions_attempt")
    await session.execute(stmt)
    row = await get_execution(session, event_id=event_id, action_id=action_id, attempt=attempt)
    if row is None:
        raise RuntimeError("action execution insert failed unexpectedly")
    return row


async def complete_execution(
    session: AsyncSession,
    *,
    execution_id: str,
    status: str,
    response: dict[str, Any] | None = None,
    error: dict[str, Any] | None = None,
) -> None:
    await session.execute(
        update(ActionExecution)
        .where(ActionExecution.id == execution_id)
        .values(status=status, response=response, error=error, completed_at=datetime.now(timezone.utc))
    )


async def latest_execution(session: AsyncSession, *, event_id: str, action_id: str) -> ActionExecution | None:
    result = await session.execute(
        select(ActionExecution)
        .where(ActionExecution.event_id == event_id, ActionExecution.action_id == action_id)
        .order_by(ActionExecution.attempt.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
