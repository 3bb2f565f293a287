from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from integrationhub.domain.models import DeadLetterEntry


DEAD_LETTER_STATUSES = ("pending", "resolved", "failed", "ignored")


async def get_by_dedupe_key(session: AsyncSession, dedupe_key: str) -> DeadLetterEntry | None:
    result = await session.execute(select(DeadLetterEntry).where(DeadLetterEntry.dedupe_key == dedupe_key))
    return result.scalar_one_or_none()


async def upsert_dead_letter(session: AsyncSession, *, values: dict[str, Any]) -> DeadLetterEntry:
    # Insert-or-increment keyed by dedupe_key; terminal rows are left untouched.
    stmt = insert(DeadLetterEntry).values(**values)
    stmt = stmt.on_conflict_do_update(
        constraint="uq_dead_letter_entries_dedupe_key",
        set_={
            "failure_count": DeadLetterEntry.failure_count + 1,
            "last_error": stmt.excluded.last_error,
            "failure_reason": stmt.excluded.failure_reason,
            "updated_at": func.now(),
        },
        where=DeadLetterEntry.status == "pending",
    )
    await session.execute(stmt)
    row = await get_by_dedupe_key(session, values["dedupe_key"])
    if row is None:
        raise RuntimeError("dead-letter upsert failed unexpectedly")
    await session.refresh(row)
    return row


async def get_dead_letter(session: AsyncSession, entry_id: str) -> DeadLetterEntry | None:
    result = await session.execute(select(DeadLetterEntry).where(DeadLetterEntry.id == entry_id))
    return result.scalar_one_or_none()


async def list_dead_letters(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    limit: int = 100,
) -> list[DeadLetterEntry]:
    stmt = select(DeadLetterEntry).where(DeadLetterEntry.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(DeadLetterEntry.status == status)
    stmt = stmt.order_by(DeadLetterEntry.created_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def due_dead_letters(session: AsyncSession, *, now: datetime, limit: int) -> list[DeadLetterEntry]:
    # Oldest-due first so a backlog drains fairly across tenants.
    stmt = (
        select(DeadLetterEntry)
        .where(
            DeadLetterEntry.status == "pending",
            (DeadLetterEntry.retry_after.is_(None)) | (DeadLetterEntry.retry_after <= now),
            (DeadLetterEntry.claimed_until.is_(None)) | (DeadLetterEntry.claimed_until <= now),
        )
        .order_by(DeadLetterEntry.retry_after.asc().nulls_first(), DeadLetterEntry.created_at.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def update_dead_letter(session: AsyncSession, entry_id: str, values: dict[str, Any]) -> DeadLetterEntry | None:
    await session.execute(update(DeadLetterEntry).where(DeadLetterEntry.id == entry_id).values(**values))
    row = await get_dead_letter(session, entry_id)
    if row is not None:
        await session.refresh(row)
    return row


async def claim_dead_letter(
    session: AsyncSession, entry_id: str, *, now: datetime, lease_until: datetime
) -> bool:
    # One replay at a time per entry; a lapsed lease can be taken again.
    result = await session.execute(
        update(DeadLetterEntry)
        .where(
            DeadLetterEntry.id == entry_id,
            DeadLetterEntry.status == "pending",
            (DeadLetterEntry.claimed_until.is_(None)) | (DeadLetterEntry.claimed_until <= now),
        )
        .values(claimed_until=lease_until)
    )
    return (result.rowcount or 0) > 0


async def delete_dead_letter(session: AsyncSession, entry_id: str) -> bool:
    result = await session.execute(delete(DeadLetterEntry).where(DeadLetterEntry.id == entry_id))
    return (result.rowcount or 0) > 0


async def dead_letter_stats(session: AsyncSession, *, tenant_id: str) -> dict[str, int]:
    rows = await session.execute(
        select(DeadLetterEntry.status, func.count())
        .where(DeadLetterEntry.tenant_id == tenant_id)
        .group_by(DeadLetterEntry.status)
    )
    stats = {status: 0 for status in DEAD_LETTER_STATUSES}
    for status, count in rows.all():
        stats[status] = int(count)
    return stats


async def delete_resolved_before(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(
        delete(DeadLetterEntry).where(
            DeadLetterEntry.status == "resolved",
            DeadLetterEntry.resolved_at < before,
        )
    )
    return result.rowcount or 0
