from __future__ import annotations

import logging
import time

from arq import Retry
from arq.connections import RedisSettings

from integrationhub.core.config import get_settings
from integrationhub.services.pipeline import classify_failure
from integrationhub.services.queues import backoff_for, get_job_rate_limiter, policy_for, should_retry
from integrationhub.services.telemetry import record_job
from integrationhub.services.webhooks import WebhookPayload, dead_letter_snapshots, deliver_webhook
from integrationhub.workers.runtime import PipelineRuntime, shutdown, startup


logger = logging.getLogger(__name__)


async def deliver_webhook_job(ctx, webhook_id: str, payload: dict) -> dict:
    webhook_payload = WebhookPayload.model_validate(payload)
    runtime: PipelineRuntime = ctx["runtime"]
    policy = policy_for("webhook")
    job_try = ctx.get("job_try", 1)
    await get_job_rate_limiter().acquire()
    started = time.monotonic()
    endpoint = await runtime.store.get_webhook(webhook_id)
    if endpoint is None or endpoint.status != "active":
        # Paused or deleted after enqueue; nothing to deliver.
        record_job(queue="webhook", outcome="dropped", duration_ms=(time.monotonic() - started) * 1000.0)
        logger.info("webhook_job_skipped webhook_id=%s reason=inactive", webhook_id)
        return {"webhook_id": webhook_id, "delivered": False, "attempt": job_try}

    result = await deliver_webhook(
        endpoint, webhook_payload, gateway=runtime.gateway, store=runtime.store, attempt=job_try
    )
    duration_ms = (time.monotonic() - started) * 1000.0
    summary = {"webhook_id": webhook_id, "delivered": result.success, "attempt": job_try}
    if result.success or result.error is None:
        record_job(queue="webhook", outcome="success", duration_ms=duration_ms)
        return summary
    kind = classify_failure(result.error)
    if should_retry(policy, job_try=job_try, kind=kind):
        record_job(queue="webhook", outcome="retry", duration_ms=duration_ms)
        raise Retry(defer=backoff_for(policy, job_try))
    # Delivery log and health were already updated for this attempt; park the payload for replay.
    record_job(queue="webhook", outcome="dead_lettered", duration_ms=duration_ms)
    await runtime.dead_letters.escalate(
        **dead_letter_snapshots(endpoint, webhook_payload),
        error=result.error,
        kind="webhook",
    )
    return summary


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    policy = policy_for("webhook")
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = policy.queue_name
    max_jobs = policy.concurrency
    max_tries = policy.max_tries
    functions = [deliver_webhook_job]
    on_startup = startup
    on_shutdown = shutdown
