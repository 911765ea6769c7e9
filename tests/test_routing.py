from __future__ import annotations

import pytest

from convoflow.service.routing import OPERATORS, EdgeRouter, evaluate_condition, resolve_path
from convoflow.storage.models import Edge, EdgeCondition, Node, WorkflowDefinition

VARIABLES = {
    "intent": "billing",
    "score": "7",
    "tags": ["vip", "late"],
    "customer": {"name": "Ana", "orders": [{"id": "A1"}, {"id": "A2"}]},
    "flag": True,
    "a.b": "literal",
}


def test_resolve_path_prefers_exact_keys_then_walks():
    assert resolve_path(VARIABLES, "a.b") == "literal"
    assert resolve_path(VARIABLES, "customer.name") == "Ana"
    assert resolve_path(VARIABLES, "customer.orders.1.id") == "A2"
    assert resolve_path(VARIABLES, "customer.orders.9.id") is None
    assert resolve_path(VARIABLES, "") is None


@pytest.mark.parametrize(
    "field, operator, value, value2, expected",
    [
        ("intent", "equals", "billing", None, True),
        ("intent", "notEquals", "billing", None, False),
        ("score", "equals", 7, None, True),
        ("flag", "equals", "true", None, True),
        ("tags", "contains", "vip", None, True),
        ("intent", "contains", "bill", None, True),
        ("tags", "notContains", "gold", None, True),
        ("score", "greaterThan", 5, None, True),
        ("score", "lessThan", 5, None, False),
        ("customer.name", "exists", None, None, True),
        ("customer.email", "notExists", None, None, True),
        ("intent", "matches", "^bill", None, True),
        ("score", "between", 10, 1, True),
        ("intent", "greaterThan", 5, None, False),
    ],
)
def test_operators(field, operator, value, value2, expected):
    condition = EdgeCondition(field=field, operator=operator, value=value, value2=value2)
    assert evaluate_condition(condition, VARIABLES) is expected


def test_all_operators_are_covered():
    assert OPERATORS == {
        "equals",
        "notEquals",
        "contains",
        "notContains",
        "greaterThan",
        "lessThan",
        "exists",
        "notExists",
        "matches",
        "between",
    }


def test_negate_and_unknown_operator():
    assert evaluate_condition(EdgeCondition("intent", "equals", "billing", negate=True), VARIABLES) is False
    assert evaluate_condition(EdgeCondition("intent", "startsWith", "bill"), VARIABLES) is False
    # Negating an unknown operator still never opens the branch
    assert evaluate_condition(EdgeCondition("intent", "startsWith", "bill", negate=True), VARIABLES) is False


def test_missing_condition_or_field_always_passes():
    assert evaluate_condition(None, VARIABLES) is True
    assert evaluate_condition(EdgeCondition(field=None), VARIABLES) is True


def test_oversized_or_invalid_match_patterns_fail_closed():
    assert evaluate_condition(EdgeCondition("intent", "matches", "b" * 501), VARIABLES) is False
    assert evaluate_condition(EdgeCondition("intent", "matches", "(unclosed"), VARIABLES) is False


def _workflow():
    return WorkflowDefinition(
        id="wf",
        nodes=[Node("start", "AI_CLASSIFY_INTENT"), Node("billing", "ACTION_MESSAGE"),
               Node("fallback", "ACTION_MESSAGE"), Node("other", "ACTION_MESSAGE")],
        edges=[
            Edge("e1", "start", "billing", EdgeCondition("intent", "equals", "billing")),
            Edge("e2", "start", "fallback"),
            Edge("e3", "start", "other", EdgeCondition("intent", "equals", "sales")),
        ],
    )


def test_first_matching_edge_wins_in_definition_order():
    router = EdgeRouter()
    workflow = _workflow()

    assert router.next_edge(workflow, "start", {"intent": "billing"}).id == "e1"
    # The unconditional edge precedes e3, so it wins for sales as well
    assert router.next_edge(workflow, "start", {"intent": "sales"}).id == "e2"
    assert router.next_edge(workflow, "billing", {"intent": "billing"}) is None


def test_guarded_only_skips_unconditional_edges():
    router = EdgeRouter()
    workflow = _workflow()

    assert router.next_edge(workflow, "start", {"intent": "sales"}, guarded_only=True).id == "e3"
    assert router.next_edge(workflow, "start", {"intent": "other"}, guarded_only=True) is None


def test_routing_is_deterministic():
    router = EdgeRouter()
    workflow = _workflow()
    picks = {router.next_edge(workflow, "start", {"intent": "billing"}).id for _ in range(20)}
    assert picks == {"e1"}
