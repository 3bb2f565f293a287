from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Any, Literal

from arq import create_pool
from arq.connections import RedisSettings

from integrationhub.core.config import get_settings
from integrationhub.domain.pipeline import EventJobPayload
from integrationhub.services.pipeline.outcomes import FailureKind
from integrationhub.services.push import PushRequest
from integrationhub.services.resilience import JobRateLimiter, exponential_backoff_ms


logger = logging.getLogger(__name__)

QueueKind = Literal["event", "webhook", "push", "dlq"]

# arq task names registered by the workers in integrationhub/workers/.
EVENT_TASK = "process_event_job"
WEBHOOK_TASK = "deliver_webhook_job"
PUSH_TASK = "push_job"
DLQ_TASK = "replay_dead_letter"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


@dataclass(frozen=True)
class QueuePolicy:
    queue_name: str
    concurrency: int
    max_tries: int
    backoff_base_ms: int


def policy_for(kind: QueueKind) -> QueuePolicy:
    settings = get_settings()
    return QueuePolicy(
        queue_name=getattr(settings, f"{kind}_queue_name"),
        concurrency=max(1, int(getattr(settings, f"{kind}_queue_concurrency"))),
        max_tries=max(1, int(getattr(settings, f"{kind}_queue_max_tries"))),
        backoff_base_ms=int(getattr(settings, f"{kind}_queue_backoff_ms")),
    )


def backoff_for(policy: QueuePolicy, job_try: int) -> timedelta:
    # base * 2^(try-1): the delay before the next try after a failed one.
    return timedelta(milliseconds=exponential_backoff_ms(job_try, base_ms=policy.backoff_base_ms))


def should_retry(policy: QueuePolicy, *, job_try: int, kind: FailureKind | None) -> bool:
    return kind == "retryable" and job_try < policy.max_tries


@lru_cache
def get_job_rate_limiter() -> JobRateLimiter:
    # One bucket per worker process, shared by every queue it consumes.
    settings = get_settings()
    return JobRateLimiter(rate=settings.job_rate_per_second, burst=settings.job_rate_burst)


async def get_redis_pool():
    # Cache the arq pool per event loop; enqueue helpers share it.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.event_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def _enqueue(
    kind: QueueKind,
    function: str,
    *args: Any,
    job_id: str,
    defer_by: timedelta | None = None,
) -> str:
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        function,
        *args,
        _job_id=job_id,
        _queue_name=policy_for(kind).queue_name,
        _defer_by=defer_by,
    )
    if job is None:
        # arq returns None for a job id that is queued or still has a result.
        logger.info("job_enqueue_deduplicated queue=%s job_id=%s", kind, job_id)
    return job.job_id if job else job_id


async def enqueue_event(payload: EventJobPayload) -> str:
    return await _enqueue("event", EVENT_TASK, payload.snapshot(), job_id=f"event:{payload.event_id}")


async def enqueue_webhook_delivery(webhook_id: str, payload: dict[str, Any]) -> str:
    return await _enqueue(
        "webhook",
        WEBHOOK_TASK,
        webhook_id,
        payload,
        job_id=f"webhook:{webhook_id}:{payload['delivery_id']}",
    )


async def enqueue_push(request: PushRequest) -> str:
    return await _enqueue("push", PUSH_TASK, request.model_dump(mode="json"), job_id=f"push:{request.record_id}")


async def enqueue_dead_letter_replay(
    entry_id: str,
    *,
    failure_count: int = 0,
    defer_by: timedelta | None = None,
) -> str:
    # One job per ladder step; the failure count keeps ids unique across steps.
    return await _enqueue(
        "dlq",
        DLQ_TASK,
        entry_id,
        job_id=f"dlq:{entry_id}:{failure_count}",
        defer_by=defer_by,
    )
