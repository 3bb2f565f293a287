from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from integrationhub.domain.models import Connector, PushJobRecord


async def get_connector(session: AsyncSession, connector_id: str) -> Connector | None:
    result = await session.execute(select(Connector).where(Connector.id == connector_id))
    return result.scalar_one_or_none()


async def create_push_record(session: AsyncSession, *, values: dict[str, Any]) -> PushJobRecord:
    record = PushJobRecord(**values)
    session.add(record)
    await session.flush()
    return record


async def update_push_record(session: AsyncSession, record_id: str, values: dict[str, Any]) -> None:
    await session.execute(update(PushJobRecord).where(PushJobRecord.id == record_id).values(**values))
