from integrationhub.services.pipeline.actions import (
    ActionDispatcher,
    ActionExecutor,
    render_template,
)
from integrationhub.services.pipeline.conditions import evaluate_condition, evaluate_conditions, get_path
from integrationhub.services.pipeline.outcomes import (
    ActionFailure,
    EventOutcome,
    TriggerOutcome,
    classify_failure,
)
from integrationhub.services.pipeline.processor import process_event, run_trigger, should_escalate
from integrationhub.services.pipeline.runner import ActionRunner

__all__ = [
    "ActionDispatcher",
    "ActionExecutor",
    "ActionFailure",
    "ActionRunner",
    "EventOutcome",
    "TriggerOutcome",
    "classify_failure",
    "evaluate_condition",
    "evaluate_conditions",
    "get_path",
    "process_event",
    "render_template",
    "run_trigger",
    "should_escalate",
]
