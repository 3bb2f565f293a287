from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from integrationhub.domain.models import WebhookDelivery, WebhookEndpoint


async def find_webhooks_for_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    event: str,
    form_id: str | None = None,
) -> list[WebhookEndpoint]:
    stmt = select(WebhookEndpoint).where(
        WebhookEndpoint.tenant_id == tenant_id,
        WebhookEndpoint.status == "active",
        WebhookEndpoint.events.any(event),
    )
    if form_id is not None:
        # Endpoints without a form filter receive events for every form.
        stmt = stmt.where(or_(WebhookEndpoint.form_id == form_id, WebhookEndpoint.form_id.is_(None)))
    stmt = stmt.order_by(WebhookEndpoint.created_at.asc())
    return list((await session.execute(stmt)).scalars().all())


async def get_webhook(session: AsyncSession, webhook_id: str) -> WebhookEndpoint | None:
    result = await session.execute(select(WebhookEndpoint).where(WebhookEndpoint.id == webhook_id))
    return result.scalar_one_or_none()


async def record_delivery(session: AsyncSession, *, values: dict[str, Any]) -> None:
    session.add(WebhookDelivery(**values))


async def update_health(
    session: AsyncSession,
    *,
    webhook_id: str,
    success: bool,
    degraded_after: int,
    disable_after: int,
) -> WebhookEndpoint | None:
    # Success resets the streak; failures degrade, then disable the endpoint.
    endpoint = await get_webhook(session, webhook_id)
    if endpoint is None:
        return None
    now = datetime.now(timezone.utc)
    if success:
        values: dict[str, Any] = {
            "consecutive_failures": 0,
            "health_status": "healthy",
            "last_success_at": now,
            "success_count": WebhookEndpoint.success_count + 1,
        }
    else:
        streak = (endpoint.consecutive_failures or 0) + 1
        values = {
            "consecutive_failures": WebhookEndpoint.consecutive_failures + 1,
            "failure_count": WebhookEndpoint.failure_count + 1,
        }
        if streak >= disable_after:
            values["health_status"] = "unhealthy"
            values["status"] = "disabled"
        elif streak >= degraded_after:
            values["health_status"] = "degraded"
    await session.execute(update(WebhookEndpoint).where(WebhookEndpoint.id == webhook_id).values(**values))
    await session.refresh(endpoint)
    return endpoint
