from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from integrationhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from integrationhub.apps.api.response import SuccessEnvelope, success_response
from integrationhub.services.telemetry import connector_latency, counters_snapshot, gauges_snapshot, job_outcomes

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

METRICS_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    window_s: int
    counters: dict[str, int]
    gauges: dict[str, float]
    connectors: dict[str, dict[str, float]]
    jobs: dict[str, dict[str, int]]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request) -> dict:
    # Counters for this API process; workers keep their own.
    payload = MetricsResponse(
        window_s=METRICS_WINDOW_S,
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        connectors=connector_latency(METRICS_WINDOW_S),
        jobs=job_outcomes(METRICS_WINDOW_S),
    )
    return success_response(request=request, data=payload)
