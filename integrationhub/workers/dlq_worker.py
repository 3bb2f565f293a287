from __future__ import annotations

import asyncio
import logging
import time

from arq.connections import RedisSettings

from integrationhub.core.config import get_settings
from integrationhub.core.errors import DeadLetterNotFoundError
from integrationhub.services.dead_letters import DeadLetterService
from integrationhub.services.queues import enqueue_dead_letter_replay, get_job_rate_limiter, policy_for
from integrationhub.services.telemetry import record_job
from integrationhub.workers.runtime import PipelineRuntime
from integrationhub.workers.runtime import shutdown as runtime_shutdown
from integrationhub.workers.runtime import startup as runtime_startup


logger = logging.getLogger(__name__)


async def replay_dead_letter(ctx, entry_id: str) -> str:
    # Replay failures are recorded on the entry itself; the job never asks arq to retry.
    runtime: PipelineRuntime = ctx["runtime"]
    await get_job_rate_limiter().acquire()
    started = time.monotonic()
    try:
        result = await runtime.dead_letters.replay(entry_id)
    except DeadLetterNotFoundError:
        logger.info("dead_letter_replay_skipped id=%s reason=missing", entry_id)
        return "missing"
    record_job(queue="dlq", outcome=result.status, duration_ms=(time.monotonic() - started) * 1000.0)
    return result.status


async def enqueue_due_replays(dead_letters: DeadLetterService, *, limit: int) -> int:
    entries = await dead_letters.due_entries(limit=limit)
    for entry in entries:
        await enqueue_dead_letter_replay(entry.id, failure_count=entry.failure_count)
    if entries:
        logger.info("dead_letter_replays_enqueued count=%s", len(entries))
    return len(entries)


async def _scheduler_loop(dead_letters: DeadLetterService) -> None:
    # Enqueue due entries on a fixed cadence so replays continue without operator traffic.
    settings = get_settings()
    interval_s = max(1, int(settings.dlq_replay_interval_s))
    batch = max(1, int(settings.dlq_replay_batch_size))
    while True:
        try:
            await enqueue_due_replays(dead_letters, limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("dead_letter_scheduler_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    await runtime_startup(ctx)
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop(ctx["runtime"].dead_letters))


async def _shutdown(ctx) -> None:
    # Cancel scheduler task on shutdown to avoid dangling coroutines.
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()
    await runtime_shutdown(ctx)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    policy = policy_for("dlq")
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = policy.queue_name
    max_jobs = policy.concurrency
    max_tries = policy.max_tries
    functions = [replay_dead_letter]
    on_startup = _startup
    on_shutdown = _shutdown
