"""Branching and join handlers."""

from typing import Any, Dict, List

from ..models.core import NodeKind
from .base import HandlerContext, HandlerResult, NodeHandler

FALLBACK_OUTPUT = "fallback"
TRUE_OUTPUT = "true"
FALSE_OUTPUT = "false"


def _loosely_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    # form fields and query strings arrive as text; "200" equals 200
    if left is None or right is None:
        return False
    return str(left) == str(right)


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("booleans are not comparable as numbers")
    return float(value)


def compare(left: Any, operator: str, right: Any = None) -> bool:
    """Evaluate ``left <operator> right``.

    Raises:
        ValueError: for an unknown operator or operands the operator cannot compare
    """
    if operator == "equals":
        return _loosely_equal(left, right)
    if operator == "notEquals":
        return not _loosely_equal(left, right)
    if operator == "contains":
        if left is None:
            return False
        if isinstance(left, (list, tuple, set, dict)):
            return right in left
        return str(right) in str(left)
    if operator == "greaterThan":
        return _as_number(left) > _as_number(right)
    if operator == "lessThan":
        return _as_number(left) < _as_number(right)
    if operator == "exists":
        return left is not None and left != ""
    raise ValueError(f"Unknown operator: {operator}")


class ConditionHandler(NodeHandler):
    """Selects the ``true`` or ``false`` output."""

    kind = NodeKind.LOGIC_CONDITION

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        operator = config.get("operator", "equals")
        try:
            outcome = compare(config.get("left"), operator, config.get("right"))
        except ValueError as e:
            return HandlerResult.failure(str(e))

        handle = TRUE_OUTPUT if outcome else FALSE_OUTPUT
        return HandlerResult.success({"result": outcome}, selected_outputs=[handle])


class RouterHandler(NodeHandler):
    """Follows the first rule whose conditions hold, else ``fallback``.

    Each rule is ``{"id", "logic": "and"|"or", "conditions": [...]}``; the rule id
    is the output handle. Condition variables are bindings resolved beforehand.
    """

    kind = NodeKind.LOGIC_ROUTER

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        rules: List[Dict[str, Any]] = config.get("rules") or []

        for rule in rules:
            rule_id = rule.get("id") or rule.get("output")
            if not rule_id:
                return HandlerResult.failure("Router rule is missing an id")
            try:
                if self._rule_matches(rule):
                    return HandlerResult.success(
                        {"route": rule_id, "rule": rule.get("name", rule_id)},
                        selected_outputs=[rule_id],
                    )
            except ValueError as e:
                return HandlerResult.failure(f"Rule {rule_id}: {e}")

        return HandlerResult.success({"route": FALLBACK_OUTPUT}, selected_outputs=[FALLBACK_OUTPUT])

    @staticmethod
    def _rule_matches(rule: Dict[str, Any]) -> bool:
        conditions = rule.get("conditions") or []
        if not conditions:
            return False
        results = (
            compare(condition.get("variable"), condition.get("operator", "equals"), condition.get("value"))
            for condition in conditions
        )
        if str(rule.get("logic", "and")).lower() == "or":
            return any(results)
        return all(results)


class MergeHandler(NodeHandler):
    """Join point that runs even when a predecessor failed."""

    kind = NodeKind.LOGIC_MERGE
    error_tolerant = True

    def execute(self, config: Dict[str, Any], context: HandlerContext) -> HandlerResult:
        return HandlerResult.success(dict(context.inputs))


def logic_handlers():
    return [ConditionHandler(), RouterHandler(), MergeHandler()]
