from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from integrationhub.apps.api.deps import get_dead_letter_service, get_tenant_id
from integrationhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from integrationhub.apps.api.response import SuccessEnvelope, success_response
from integrationhub.core.errors import DeadLetterNotFoundError
from integrationhub.domain.models import DeadLetterEntry
from integrationhub.persistence.repos.dead_letters import DEAD_LETTER_STATUSES
from integrationhub.services.dead_letters import DeadLetterService
from integrationhub.services.redaction import sanitize_metadata


router = APIRouter(prefix="/admin/dead-letters", tags=["dead-letters"], responses=DEFAULT_ERROR_RESPONSES)


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str
    kind: str
    event_id: str
    trigger_id: str | None
    action_id: str
    status: str
    failure_count: int
    failure_reason: str | None
    last_error: dict[str, Any] | None
    event_snapshot: dict[str, Any]
    trigger_snapshot: dict[str, Any] | None
    action_snapshot: dict[str, Any]
    retry_after: datetime | None
    last_retry_at: datetime | None
    resolved_at: datetime | None
    claimed_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]


class ReplayResponse(BaseModel):
    status: str
    entry: DeadLetterResponse


class BulkReplayRequest(BaseModel):
    ids: list[str] = Field(min_length=1, max_length=100)


class BulkReplayResponse(BaseModel):
    results: dict[str, str]


def _serialize(entry: DeadLetterEntry) -> DeadLetterResponse:
    # Snapshots can carry action credentials; operators see them masked.
    response = DeadLetterResponse.model_validate(entry)
    return response.model_copy(
        update={
            "event_snapshot": sanitize_metadata(response.event_snapshot),
            "trigger_snapshot": sanitize_metadata(response.trigger_snapshot),
            "action_snapshot": sanitize_metadata(response.action_snapshot),
            "last_error": sanitize_metadata(response.last_error),
        }
    )


async def _get_for_tenant(service: DeadLetterService, entry_id: str, tenant_id: str) -> DeadLetterEntry:
    # Other tenants' entries read as missing.
    entry = await service.get(entry_id)
    if entry.tenant_id != tenant_id:
        raise DeadLetterNotFoundError(f"dead-letter entry {entry_id} not found")
    return entry


@router.get("", response_model=SuccessEnvelope[DeadLetterListResponse])
async def list_dead_letters(
    request: Request,
    status: str | None = Query(default=None, pattern="^(" + "|".join(DEAD_LETTER_STATUSES) + ")$"),
    limit: int = Query(default=100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    entries = await service.list_entries(tenant_id=tenant_id, status=status, limit=limit)
    payload = DeadLetterListResponse(items=[_serialize(entry) for entry in entries])
    return success_response(request=request, data=payload)


@router.get("/stats", response_model=SuccessEnvelope[dict[str, int]])
async def dead_letter_stats(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    return success_response(request=request, data=await service.stats(tenant_id=tenant_id))


@router.post("/bulk-replay", response_model=SuccessEnvelope[BulkReplayResponse])
async def bulk_replay_dead_letters(
    request: Request,
    body: BulkReplayRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    for entry_id in body.ids:
        await _get_for_tenant(service, entry_id, tenant_id)
    results = await service.bulk_replay(body.ids)
    return success_response(request=request, data=BulkReplayResponse(results=results))


@router.get("/{entry_id}", response_model=SuccessEnvelope[DeadLetterResponse])
async def get_dead_letter(
    request: Request,
    entry_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    entry = await _get_for_tenant(service, entry_id, tenant_id)
    return success_response(request=request, data=_serialize(entry))


@router.post("/{entry_id}/replay", response_model=SuccessEnvelope[ReplayResponse])
async def replay_dead_letter(
    request: Request,
    entry_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    await _get_for_tenant(service, entry_id, tenant_id)
    result = await service.replay(entry_id)
    payload = ReplayResponse(status=result.status, entry=_serialize(result.entry))
    return success_response(request=request, data=payload)


@router.post("/{entry_id}/ignore", response_model=SuccessEnvelope[DeadLetterResponse])
async def ignore_dead_letter(
    request: Request,
    entry_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    await _get_for_tenant(service, entry_id, tenant_id)
    entry = await service.ignore(entry_id)
    return success_response(request=request, data=_serialize(entry))


@router.delete("/{entry_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def delete_dead_letter(
    request: Request,
    entry_id: str,
    force: bool = Query(default=False),
    tenant_id: str = Depends(get_tenant_id),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict:
    await _get_for_tenant(service, entry_id, tenant_id)
    await service.remove(entry_id, force=force)
    return success_response(request=request, data={"id": entry_id, "deleted": True})
