from __future__ import annotations

from collections import defaultdict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from integrationhub.domain.models import EventTrigger, TriggerAction
from integrationhub.domain.pipeline import TriggerSpec


async def list_active_triggers(session: AsyncSession, *, tenant_id: str, event_type: str) -> list[TriggerSpec]:
    # Highest priority first; actions are attached in position order.
    trigger_rows = (
        await session.execute(
            select(EventTrigger)
            .where(
                EventTrigger.tenant_id == tenant_id,
                EventTrigger.event_type == event_type,
                EventTrigger.status == "active",
            )
            .order_by(EventTrigger.priority.desc(), EventTrigger.created_at.asc())
        )
    ).scalars().all()
    if not trigger_rows:
        return []
    action_rows = (
        await session.execute(
            select(TriggerAction)
            .where(TriggerAction.trigger_id.in_([row.id for row in trigger_rows]))
            .order_by(TriggerAction.trigger_id, TriggerAction.position.asc())
        )
    ).scalars().all()
    actions_by_trigger: dict[str, list[TriggerAction]] = defaultdict(list)
    for action in action_rows:
        actions_by_trigger[action.trigger_id].append(action)
    return [TriggerSpec.from_row(row, actions_by_trigger.get(row.id, [])) for row in trigger_rows]
