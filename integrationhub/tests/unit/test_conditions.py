from __future__ import annotations

from integrationhub.services.pipeline import evaluate_condition, evaluate_conditions, get_path


DATA = {
    "amount": "150",
    "email": "lead@example.com",
    "tags": ["vip", "north"],
    "customer": {"tier": "gold", "notes": ""},
    "items": [{"sku": "A-1"}],
}


def test_get_path_walks_dicts_and_lists() -> None:
    assert get_path(DATA, "customer.tier") == "gold"
    assert get_path(DATA, "items.0.sku") == "A-1"
    assert get_path(DATA, "items.3.sku") is None
    assert get_path(DATA, "customer.missing", "fallback") == "fallback"


def test_comparison_operators_coerce_numbers() -> None:
    assert evaluate_condition({"field": "amount", "operator": "greater_than", "value": 100}, DATA)
    assert not evaluate_condition({"field": "amount", "operator": "less_than", "value": "100"}, DATA)
    assert not evaluate_condition({"field": "email", "operator": "greater_than", "value": 1}, DATA)


def test_equality_and_containment() -> None:
    assert evaluate_condition({"field": "customer.tier", "operator": "equals", "value": "gold"}, DATA)
    assert evaluate_condition({"field": "customer.tier", "operator": "not_equals", "value": "silver"}, DATA)
    assert evaluate_condition({"field": "email", "operator": "contains", "value": "@example"}, DATA)
    assert evaluate_condition({"field": "tags", "operator": "contains", "value": "vip"}, DATA)
    assert not evaluate_condition({"field": "missing", "operator": "contains", "value": "x"}, DATA)


def test_emptiness_checks() -> None:
    assert evaluate_condition({"field": "customer.notes", "operator": "is_empty"}, DATA)
    assert evaluate_condition({"field": "missing", "operator": "is_empty"}, DATA)
    assert evaluate_condition({"field": "tags", "operator": "is_not_empty"}, DATA)


def test_unknown_operator_never_matches() -> None:
    assert not evaluate_condition({"field": "amount", "operator": "matches_regex", "value": ".*"}, DATA)


def test_conditions_are_anded_and_empty_list_matches() -> None:
    assert evaluate_conditions([], DATA)
    conditions = [
        {"field": "amount", "operator": "greater_than", "value": 100},
        {"field": "customer.tier", "operator": "equals", "value": "gold"},
    ]
    assert evaluate_conditions(conditions, DATA)
    conditions.append({"field": "customer.tier", "operator": "equals", "value": "silver"})
    assert not evaluate_conditions(conditions, DATA)
