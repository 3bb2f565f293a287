from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from integrationhub.apps.api.deps import get_gateway, get_pipeline_store, get_tenant_id
from integrationhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from integrationhub.apps.api.response import SuccessEnvelope, success_response
from integrationhub.core.errors import ConnectorNotFoundError
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.gateway import OutboundGateway
from integrationhub.services.push import connector_rate_limit


router = APIRouter(prefix="/admin/connectors", tags=["connectors"], responses=DEFAULT_ERROR_RESPONSES)


class CircuitStateResponse(BaseModel):
    connector_id: str
    state: str
    failures: int
    last_failure_at: int | None
    opened_at: int | None
    trial_in_flight: bool


class RateLimitStatusResponse(BaseModel):
    connector_id: str
    count: int
    limit: int
    remaining: int
    window_ms: int


async def _check_connector(store: PipelineStore, connector_id: str, tenant_id: str) -> Any:
    # Action-scoped ids ("action:...", "webhook:...") have no row; only real connectors are tenant checked.
    if ":" in connector_id:
        return None
    connector = await store.get_connector(connector_id)
    if connector is None or connector.tenant_id != tenant_id:
        raise ConnectorNotFoundError(f"connector {connector_id} not found")
    return connector


@router.get("/{connector_id}/circuit", response_model=SuccessEnvelope[CircuitStateResponse])
async def get_circuit(
    request: Request,
    connector_id: str,
    tenant_id: str = Depends(get_tenant_id),
    store: PipelineStore = Depends(get_pipeline_store),
    gateway: OutboundGateway = Depends(get_gateway),
) -> dict:
    await _check_connector(store, connector_id, tenant_id)
    state = await gateway.get_circuit_state(connector_id)
    return success_response(request=request, data=CircuitStateResponse(**state))


@router.post("/{connector_id}/circuit/reset", response_model=SuccessEnvelope[CircuitStateResponse])
async def reset_circuit(
    request: Request,
    connector_id: str,
    tenant_id: str = Depends(get_tenant_id),
    store: PipelineStore = Depends(get_pipeline_store),
    gateway: OutboundGateway = Depends(get_gateway),
) -> dict:
    await _check_connector(store, connector_id, tenant_id)
    await gateway.reset_circuit(connector_id)
    state = await gateway.get_circuit_state(connector_id)
    return success_response(request=request, data=CircuitStateResponse(**state))


@router.get("/{connector_id}/rate-limit", response_model=SuccessEnvelope[RateLimitStatusResponse])
async def get_rate_limit(
    request: Request,
    connector_id: str,
    tenant_id: str = Depends(get_tenant_id),
    store: PipelineStore = Depends(get_pipeline_store),
    gateway: OutboundGateway = Depends(get_gateway),
) -> dict:
    connector = await _check_connector(store, connector_id, tenant_id)
    policy = connector_rate_limit(connector) if connector is not None else None
    status = await gateway.get_rate_limit_status(connector_id, policy)
    return success_response(request=request, data=RateLimitStatusResponse(**status))
