from __future__ import annotations

import logging
import time

from arq import Retry
from arq.connections import RedisSettings

from integrationhub.core.config import get_settings
from integrationhub.services.pipeline import classify_failure
from integrationhub.services.push import PushRequest, mark_push_failed, push_data
from integrationhub.services.queues import backoff_for, get_job_rate_limiter, policy_for, should_retry
from integrationhub.services.telemetry import record_job
from integrationhub.workers.runtime import PipelineRuntime, shutdown, startup


logger = logging.getLogger(__name__)


async def push_job(ctx, payload: dict) -> dict:
    request = PushRequest.model_validate(payload)
    runtime: PipelineRuntime = ctx["runtime"]
    policy = policy_for("push")
    job_try = ctx.get("job_try", 1)
    await get_job_rate_limiter().acquire()
    started = time.monotonic()
    try:
        response = await push_data(request, gateway=runtime.gateway, store=runtime.store, attempt=job_try)
    except Exception as exc:  # noqa: BLE001 - classified below; the audit row keeps the error.
        duration_ms = (time.monotonic() - started) * 1000.0
        if should_retry(policy, job_try=job_try, kind=classify_failure(exc)):
            record_job(queue="push", outcome="retry", duration_ms=duration_ms)
            raise Retry(defer=backoff_for(policy, job_try)) from exc
        record_job(queue="push", outcome="failed", duration_ms=duration_ms)
        # The audit row is retained as failed rather than deleted.
        await mark_push_failed(runtime.store, request.record_id, exc)
        return {"record_id": request.record_id, "status": "failed", "attempt": job_try}
    record_job(queue="push", outcome="success", duration_ms=(time.monotonic() - started) * 1000.0)
    return {
        "record_id": request.record_id,
        "status": "succeeded",
        "erp_record_id": response.erp_record_id,
        "attempt": job_try,
    }


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    policy = policy_for("push")
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = policy.queue_name
    max_jobs = policy.concurrency
    max_tries = policy.max_tries
    functions = [push_job]
    on_startup = startup
    on_shutdown = shutdown
