from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from integrationhub.core.errors import ActionExecutionError, GatewayTimeoutError
from integrationhub.domain.pipeline import ActionSpec, EventJobPayload
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.pipeline.actions import ActionDispatcher
from integrationhub.services.redaction import error_detail, sanitize_metadata
from integrationhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _wrap(action: ActionSpec, exc: BaseException) -> ActionExecutionError:
    if isinstance(exc, ActionExecutionError):
        return exc
    return ActionExecutionError(
        f"action {action.action_type} failed: {exc}",
        action_id=action.id,
        action_type=action.action_type,
        cause=exc,
    )


class StoredActionFailure(Exception):
    """A prior attempt with the same execution key already failed."""

    def __init__(self, error: dict[str, Any] | None) -> None:
        super().__init__((error or {}).get("message", "action failed on a previous run"))
        self.error = error or {}


class ActionRunner:
    """Runs one action and records its ActionExecution row."""

    def __init__(self, store: PipelineStore, dispatcher: ActionDispatcher) -> None:
        self._store = store
        self._dispatcher = dispatcher

    async def invoke(self, action: ActionSpec, event: EventJobPayload) -> dict[str, Any]:
        # Bound the whole action, including gateway retries, by the action timeout.
        timeout_s = max(action.timeout_ms, 1) / 1000.0
        try:
            return await asyncio.wait_for(self._dispatcher.dispatch(action, event), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise _wrap(
                action,
                GatewayTimeoutError(
                    f"action timed out after {action.timeout_ms}ms",
                    connector_id=f"action:{action.id}",
                    duration_ms=float(action.timeout_ms),
                ),
            ) from exc
        except Exception as exc:
            raise _wrap(action, exc) from exc

    async def run(
        self,
        *,
        event: EventJobPayload,
        trigger_id: str,
        action: ActionSpec,
        attempt: int,
    ) -> dict[str, Any]:
        execution = await self._store.create_execution(
            event_id=event.event_id,
            tenant_id=event.tenant_id,
            trigger_id=trigger_id,
            action_id=action.id,
            attempt=attempt,
        )
        # A redelivered job with the same attempt must not repeat side effects.
        if execution.status == "success":
            logger.info(
                "action_execution_already_succeeded event_id=%s action_id=%s attempt=%s",
                event.event_id,
                action.id,
                attempt,
            )
            return execution.response or {}
        if execution.status == "failed":
            raise _wrap(action, StoredActionFailure(execution.error))

        started = time.monotonic()
        try:
            response = await self.invoke(action, event)
        except ActionExecutionError as exc:
            await self._store.complete_execution(execution.id, status="failed", error=error_detail(exc))
            increment_counter("action_failures_total")
            logger.warning(
                "action_execution_failed event_id=%s trigger_id=%s action_id=%s type=%s attempt=%s error=%s",
                event.event_id,
                trigger_id,
                action.id,
                action.action_type,
                attempt,
                type(exc.cause or exc).__name__,
            )
            raise
        await self._store.complete_execution(
            execution.id, status="success", response=sanitize_metadata(response)
        )
        increment_counter("action_success_total")
        logger.info(
            "action_execution_succeeded event_id=%s action_id=%s type=%s duration_ms=%.1f",
            event.event_id,
            action.id,
            action.action_type,
            (time.monotonic() - started) * 1000.0,
        )
        return response
