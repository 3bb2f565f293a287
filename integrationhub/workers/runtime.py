from __future__ import annotations

import logging
from dataclasses import dataclass

from integrationhub.core.logging import configure_logging
from integrationhub.persistence.store import PipelineStore, SqlPipelineStore
from integrationhub.services.dead_letters import DeadLetterService
from integrationhub.services.gateway import OutboundGateway, build_gateway
from integrationhub.services.pipeline import ActionDispatcher, ActionExecutor, ActionRunner
from integrationhub.services.transforms import get_default_registry
from integrationhub.services.webhooks import build_redeliver


logger = logging.getLogger(__name__)

_action_executor: ActionExecutor | None = None


def configure_action_executor(executor: ActionExecutor | None) -> None:
    # Deployments register their email/SMS/CRM provider before workers start.
    global _action_executor
    _action_executor = executor


@dataclass
class PipelineRuntime:
    store: PipelineStore
    gateway: OutboundGateway
    dispatcher: ActionDispatcher
    runner: ActionRunner
    dead_letters: DeadLetterService


def build_runtime(*, store: PipelineStore, gateway: OutboundGateway, executor: ActionExecutor | None = None) -> PipelineRuntime:
    transforms = get_default_registry().copy()
    transforms.freeze()
    dispatcher = ActionDispatcher(gateway=gateway, executor=executor or _action_executor, transforms=transforms)
    dispatcher.freeze()
    runner = ActionRunner(store, dispatcher)
    dead_letters = DeadLetterService(
        store,
        runner,
        webhook_redeliver=build_redeliver(gateway=gateway, store=store),
    )
    return PipelineRuntime(
        store=store,
        gateway=gateway,
        dispatcher=dispatcher,
        runner=runner,
        dead_letters=dead_letters,
    )


async def startup(ctx: dict) -> None:
    # Shared by every worker: logging, gateway client and the frozen registries.
    configure_logging()
    gateway = await build_gateway()
    ctx["runtime"] = build_runtime(store=SqlPipelineStore(), gateway=gateway)
    logger.info("worker_runtime_ready")


async def shutdown(ctx: dict) -> None:
    runtime: PipelineRuntime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.gateway.aclose()
