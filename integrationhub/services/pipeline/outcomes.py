from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from integrationhub.core.errors import (
    ActionExecutionError,
    CircuitBreakerError,
    ConnectorDisabledError,
    ConnectorNotFoundError,
    DeadLetterNotFoundError,
    GatewayError,
    GatewayTimeoutError,
    RateLimitError,
    TransformExecutionError,
    ValidationError,
    WebhookNotFoundError,
)


FailureKind = Literal["retryable", "fatal"]
# Remote 408 and 429 answers are worth another queue try.
_RETRYABLE_STATUS = frozenset({408, 429})
TriggerStatus = Literal["skipped", "completed", "aborted"]

_FATAL_TYPES = (
    ValidationError,
    WebhookNotFoundError,
    TransformExecutionError,
    ConnectorNotFoundError,
    ConnectorDisabledError,
    DeadLetterNotFoundError,
)


def classify_failure(exc: BaseException) -> FailureKind:
    """Decide whether the queue should try a failed job again.

    Configuration problems and 4xx answers are fatal; everything transient
    (timeouts, network errors, 5xx, open circuits, exhausted rate windows) and
    unknown executor errors are retryable within the queue's attempt budget.
    """
    if isinstance(exc, ActionExecutionError) and exc.cause is not None:
        return classify_failure(exc.cause)
    if isinstance(exc, _FATAL_TYPES):
        return "fatal"
    if isinstance(exc, (GatewayTimeoutError, RateLimitError, CircuitBreakerError)):
        return "retryable"
    if isinstance(exc, GatewayError):
        if exc.details.get("network") or exc.status_code >= 500 or exc.status_code in _RETRYABLE_STATUS:
            return "retryable"
        return "fatal"
    return "retryable"


@dataclass(frozen=True)
class ActionFailure:
    action_id: str
    action_type: str
    error: BaseException
    escalated: bool = False

    @property
    def kind(self) -> FailureKind:
        return classify_failure(self.error)


@dataclass
class TriggerOutcome:
    trigger_id: str
    status: TriggerStatus
    executed: list[str] = field(default_factory=list)
    failures: list[ActionFailure] = field(default_factory=list)
    abort_error: BaseException | None = None


@dataclass
class EventOutcome:
    event_id: str
    attempt: int
    triggers: list[TriggerOutcome] = field(default_factory=list)

    @property
    def matched(self) -> list[TriggerOutcome]:
        return [trigger for trigger in self.triggers if trigger.status != "skipped"]

    @property
    def aborted(self) -> list[TriggerOutcome]:
        return [trigger for trigger in self.triggers if trigger.status == "aborted"]

    def failure_kind(self) -> FailureKind | None:
        # Only aborted triggers surface to the job; "continue" triggers absorb their failures.
        errors = [trigger.abort_error for trigger in self.aborted if trigger.abort_error is not None]
        if not errors:
            return None
        if any(classify_failure(error) == "retryable" for error in errors):
            return "retryable"
        return "fatal"

    def first_error(self) -> BaseException | None:
        for trigger in self.aborted:
            if trigger.abort_error is not None:
                return trigger.abort_error
        return None
