from __future__ import annotations

import logging
import time

from arq import Retry
from arq.connections import RedisSettings

from integrationhub.core.config import get_settings
from integrationhub.domain.pipeline import EventJobPayload
from integrationhub.services.pipeline import process_event
from integrationhub.services.queues import backoff_for, get_job_rate_limiter, policy_for, should_retry
from integrationhub.services.telemetry import record_job
from integrationhub.workers.runtime import PipelineRuntime, shutdown, startup


logger = logging.getLogger(__name__)


async def process_event_job(ctx, payload: dict) -> dict:
    # Validate the producer payload here so malformed jobs fail before any side effect.
    event = EventJobPayload.model_validate(payload)
    runtime: PipelineRuntime = ctx["runtime"]
    policy = policy_for("event")
    job_try = ctx.get("job_try", 1)
    await get_job_rate_limiter().acquire()
    started = time.monotonic()
    outcome = await process_event(
        event,
        store=runtime.store,
        dispatcher=runtime.dispatcher,
        dead_letters=runtime.dead_letters,
        attempt=job_try,
    )
    duration_ms = (time.monotonic() - started) * 1000.0
    kind = outcome.failure_kind()
    summary = {
        "event_id": event.event_id,
        "matched": len(outcome.matched),
        "aborted": len(outcome.aborted),
        "attempt": job_try,
    }
    if kind is None:
        record_job(queue="event", outcome="success", duration_ms=duration_ms)
        return summary
    if should_retry(policy, job_try=job_try, kind=kind):
        record_job(queue="event", outcome="retry", duration_ms=duration_ms)
        raise Retry(defer=backoff_for(policy, job_try))
    # Exhausted or fatal: failed actions were escalated to dead-letters by the pipeline.
    record_job(queue="event", outcome="dropped", duration_ms=duration_ms)
    logger.warning(
        "event_job_dropped event_id=%s attempt=%s kind=%s error=%s",
        event.event_id,
        job_try,
        kind,
        type(outcome.first_error()).__name__,
    )
    return summary


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    policy = policy_for("event")
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = policy.queue_name
    max_jobs = policy.concurrency
    max_tries = policy.max_tries
    functions = [process_event_job]
    on_startup = startup
    on_shutdown = shutdown
