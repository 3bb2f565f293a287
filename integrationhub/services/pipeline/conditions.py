from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping


logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    # Dot-path lookup into nested dicts; numeric segments index into lists.
    current = data
    for segment in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _contains(field_value: Any, expected: Any) -> bool:
    if field_value is None:
        return False
    if isinstance(field_value, str):
        return str(expected) in field_value
    if isinstance(field_value, (list, tuple, set, dict)):
        return expected in field_value
    return str(expected) in str(field_value)


def _compare(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _check(field_value: Any, expected: Any) -> bool:
        left, right = _as_number(field_value), _as_number(expected)
        if left is None or right is None:
            return False
        return op(left, right)

    return _check


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda field_value, expected: field_value == expected,
    "not_equals": lambda field_value, expected: field_value != expected,
    "contains": _contains,
    "greater_than": _compare(lambda left, right: left > right),
    "less_than": _compare(lambda left, right: left < right),
    "is_empty": lambda field_value, _expected: _is_empty(field_value),
    "is_not_empty": lambda field_value, _expected: not _is_empty(field_value),
}


def evaluate_condition(condition: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
    operator = condition.get("operator")
    check = OPERATORS.get(str(operator))
    if check is None:
        logger.warning("trigger_condition_unknown_operator operator=%s", operator)
        return False
    field_value = get_path(data, str(condition.get("field", "")))
    return check(field_value, condition.get("value"))


def evaluate_conditions(conditions: Iterable[Mapping[str, Any]], data: Mapping[str, Any]) -> bool:
    # AND semantics; an empty condition list always matches.
    return all(evaluate_condition(condition, data) for condition in conditions)
