from __future__ import annotations

import re
from typing import Any, Callable, Dict, Mapping, Optional

from convoflow.logging import get_logger
from convoflow.storage.models import Edge, EdgeCondition, WorkflowDefinition

logger = get_logger(__name__)

MAX_PATTERN_LENGTH = 500
_MISSING = object()


def resolve_path(variables: Mapping[str, Any], path: Optional[str]) -> Any:
    """Look up ``a.b.c`` in nested mappings/lists; exact keys win over dotted walks."""
    if not path:
        return None
    if path in variables:
        return variables[path]
    current: Any = variables
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _loose_equals(left: Any, right: Any) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    # Variables coming from chat text are strings; configured values may be typed
    if isinstance(left, bool) or isinstance(right, bool):
        return str(left).lower() == str(right).lower()
    left_num, right_num = _to_number(left), _to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return str(left) == str(right)


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, (list, tuple, set)):
        return any(_loose_equals(entry, item) for entry in container)
    if isinstance(container, Mapping):
        return str(item) in container
    return str(item) in str(container)


def _matches(value: Any, pattern: Any) -> bool:
    if value is None or pattern is None:
        return False
    pattern = str(pattern)
    if len(pattern) > MAX_PATTERN_LENGTH:
        logger.warning("edge_pattern_too_long", length=len(pattern))
        return False
    try:
        return re.search(pattern, str(value)) is not None
    except re.error as exc:
        logger.warning("edge_pattern_invalid", error=str(exc))
        return False


def _between(value: Any, low: Any, high: Any) -> bool:
    number, lo, hi = _to_number(value), _to_number(low), _to_number(high)
    if number is None or lo is None or hi is None:
        return False
    if lo > hi:
        lo, hi = hi, lo
    return lo <= number <= hi


def _greater(value: Any, other: Any) -> bool:
    left, right = _to_number(value), _to_number(other)
    return left is not None and right is not None and left > right


def _less(value: Any, other: Any) -> bool:
    left, right = _to_number(value), _to_number(other)
    return left is not None and right is not None and left < right


_OPERATORS: Dict[str, Callable[[Any, EdgeCondition], bool]] = {
    "equals": lambda v, c: _loose_equals(v, c.value),
    "notEquals": lambda v, c: not _loose_equals(v, c.value),
    "contains": lambda v, c: _contains(v, c.value),
    "notContains": lambda v, c: not _contains(v, c.value),
    "greaterThan": lambda v, c: _greater(v, c.value),
    "lessThan": lambda v, c: _less(v, c.value),
    "exists": lambda v, c: v is not None,
    "notExists": lambda v, c: v is None,
    "matches": lambda v, c: _matches(v, c.value),
    "between": lambda v, c: _between(v, c.value, c.value2),
}

OPERATORS = frozenset(_OPERATORS)


def evaluate_condition(condition: Optional[EdgeCondition], variables: Mapping[str, Any]) -> bool:
    """Evaluate one edge guard against the run's variables.

    A missing guard (or one without a field) always passes. Unknown operators
    evaluate to False so a typo in a graph can never open a branch.
    """
    if condition is None or not condition.field:
        return True
    handler = _OPERATORS.get(condition.operator)
    if handler is None:
        logger.warning("edge_operator_unknown", operator=condition.operator, field=condition.field)
        return False
    result = bool(handler(resolve_path(variables, condition.field), condition))
    return not result if condition.negate else result


class EdgeRouter:
    """First-match routing over a node's outgoing edges in definition order."""

    def next_edge(
        self,
        workflow: WorkflowDefinition,
        node_id: str,
        variables: Mapping[str, Any],
        *,
        guarded_only: bool = False,
    ) -> Optional[Edge]:
        """Pick the edge to follow, or None to end the run at ``node_id``.

        ``guarded_only`` skips unconditional edges; used after a node reports
        should_continue=False so only an explicit else-branch can be taken.
        """
        for edge in workflow.outgoing(node_id):
            if edge.condition is None:
                if guarded_only:
                    continue
                return edge
            if evaluate_condition(edge.condition, variables):
                return edge
        return None
