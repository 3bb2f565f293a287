from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from integrationhub.core.config import get_settings
from integrationhub.core.errors import ActionExecutionError
from integrationhub.domain.pipeline import ActionSpec, EventJobPayload, TriggerSpec
from integrationhub.persistence.store import PipelineStore
from integrationhub.services.pipeline.actions import ActionDispatcher
from integrationhub.services.pipeline.conditions import evaluate_conditions
from integrationhub.services.pipeline.outcomes import ActionFailure, EventOutcome, TriggerOutcome, classify_failure
from integrationhub.services.pipeline.runner import ActionRunner
from integrationhub.services.telemetry import increment_counter

if TYPE_CHECKING:
    from integrationhub.services.dead_letters import DeadLetterService


logger = logging.getLogger(__name__)


def should_escalate(action: ActionSpec, error: BaseException, *, attempt: int, threshold: int) -> bool:
    # Fatal failures are never tried again by the queue, so they escalate on the first try.
    return action.is_critical or attempt >= threshold or classify_failure(error) == "fatal"


async def _escalate(
    dead_letters: "DeadLetterService | None",
    *,
    event: EventJobPayload,
    trigger: TriggerSpec,
    action: ActionSpec,
    error: BaseException,
) -> bool:
    if dead_letters is None:
        return False
    try:
        await dead_letters.escalate(
            event_snapshot=event.snapshot(),
            trigger_snapshot=trigger.snapshot(),
            action_snapshot=action.snapshot(),
            error=error,
        )
    except Exception:  # noqa: BLE001 - a dead-letter write failure must not abort sibling triggers.
        logger.exception(
            "dead_letter_escalation_failed event_id=%s trigger_id=%s action_id=%s",
            event.event_id,
            trigger.id,
            action.id,
        )
        return False
    return True


async def run_trigger(
    trigger: TriggerSpec,
    event: EventJobPayload,
    *,
    runner: ActionRunner,
    dead_letters: "DeadLetterService | None",
    attempt: int,
    escalation_threshold: int,
) -> TriggerOutcome:
    outcome = TriggerOutcome(trigger_id=trigger.id, status="completed")
    for action in trigger.actions:
        try:
            await runner.run(event=event, trigger_id=trigger.id, action=action, attempt=attempt)
        except ActionExecutionError as exc:
            escalated = False
            if should_escalate(action, exc, attempt=attempt, threshold=escalation_threshold):
                escalated = await _escalate(
                    dead_letters, event=event, trigger=trigger, action=action, error=exc
                )
            outcome.failures.append(
                ActionFailure(
                    action_id=action.id,
                    action_type=action.action_type,
                    error=exc,
                    escalated=escalated,
                )
            )
            if trigger.error_handling == "stop_on_first_error":
                outcome.status = "aborted"
                outcome.abort_error = exc
                logger.warning(
                    "trigger_aborted event_id=%s trigger_id=%s action_id=%s escalated=%s",
                    event.event_id,
                    trigger.id,
                    action.id,
                    escalated,
                )
                break
            continue
        outcome.executed.append(action.id)
    return outcome


async def process_event(
    event: EventJobPayload,
    *,
    store: PipelineStore,
    dispatcher: ActionDispatcher,
    dead_letters: "DeadLetterService | None",
    attempt: int,
    escalation_threshold: int | None = None,
) -> EventOutcome:
    """Match an event against its tenant's active triggers and run their actions.

    Triggers run one after another in priority order. A failure inside one
    trigger is contained in its TriggerOutcome; the caller reads
    ``outcome.failure_kind()`` to decide whether the job is retried.
    """
    threshold = escalation_threshold or get_settings().escalation_attempt_threshold
    runner = ActionRunner(store, dispatcher)
    outcome = EventOutcome(event_id=event.event_id, attempt=attempt)
    triggers = await store.list_active_triggers(tenant_id=event.tenant_id, event_type=event.event_type)
    for trigger in triggers:
        if not evaluate_conditions(trigger.conditions, event.data):
            outcome.triggers.append(TriggerOutcome(trigger_id=trigger.id, status="skipped"))
            continue
        increment_counter("trigger_matches_total")
        outcome.triggers.append(
            await run_trigger(
                trigger,
                event,
                runner=runner,
                dead_letters=dead_letters,
                attempt=attempt,
                escalation_threshold=threshold,
            )
        )
    logger.info(
        "event_processed event_id=%s tenant_id=%s type=%s triggers=%s matched=%s aborted=%s attempt=%s",
        event.event_id,
        event.tenant_id,
        event.event_type,
        len(outcome.triggers),
        len(outcome.matched),
        len(outcome.aborted),
        attempt,
    )
    return outcome
