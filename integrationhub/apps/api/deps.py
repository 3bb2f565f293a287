from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request

from integrationhub.apps.api.response import TENANT_HEADER
from integrationhub.persistence.store import PipelineStore, SqlPipelineStore
from integrationhub.services.dead_letters import DeadLetterService
from integrationhub.services.gateway import OutboundGateway
from integrationhub.services.resilience import FastStore, get_resilience_redis
from integrationhub.workers.runtime import build_runtime


def get_tenant_id(request: Request) -> str:
    # Operator calls are tenant scoped; authentication sits in front of this service.
    tenant_id = request.headers.get(TENANT_HEADER)
    if not tenant_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "TENANT_REQUIRED", "message": "Missing X-Tenant-Id header"},
        )
    return tenant_id


def get_pipeline_store() -> PipelineStore:
    return SqlPipelineStore()


async def get_fast_store() -> FastStore | None:
    return await get_resilience_redis()


async def get_gateway(store: FastStore | None = Depends(get_fast_store)) -> AsyncGenerator[OutboundGateway, None]:
    # The HTTP client is created lazily, so read-only routes never open one.
    gateway = OutboundGateway(store=store)
    try:
        yield gateway
    finally:
        await gateway.aclose()


def get_dead_letter_service(
    store: PipelineStore = Depends(get_pipeline_store),
    gateway: OutboundGateway = Depends(get_gateway),
) -> DeadLetterService:
    return build_runtime(store=store, gateway=gateway).dead_letters
