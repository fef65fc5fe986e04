"""Condition Evaluator - step conditions and dynamic deadline formulas, no eval()"""
from typing import Any, Dict, List, Optional

from ..logging_config import get_logger
from ..models import StepCondition

logger = get_logger(__name__)

OPERATORS = ("eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "contains", "exists")


def get_field_value(field_path: str, context: Dict[str, Any]) -> Any:
    """
    Dot-notation lookup.

    Example: "document.metadata.amount" -> context["document"]["metadata"]["amount"]
    """
    value: Any = context
    for part in field_path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


def _numeric(a: Any, b: Any, cmp) -> bool:
    try:
        return cmp(float(a), float(b))
    except (TypeError, ValueError):
        return False


def evaluate_condition(condition: StepCondition, context: Dict[str, Any]) -> bool:
    actual = get_field_value(condition.field, context)
    expected = condition.value
    op = condition.operator.lower()

    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "gt":
        return _numeric(actual, expected, lambda a, b: a > b)
    if op == "gte":
        return _numeric(actual, expected, lambda a, b: a >= b)
    if op == "lt":
        return _numeric(actual, expected, lambda a, b: a < b)
    if op == "lte":
        return _numeric(actual, expected, lambda a, b: a <= b)
    if op in ("in", "not_in"):
        options = expected if isinstance(expected, list) else [expected]
        return (actual in options) == (op == "in")
    if op == "contains":
        if isinstance(actual, list):
            return expected in actual
        return actual is not None and str(expected) in str(actual)
    if op == "exists":
        return (actual is not None) == bool(expected if expected is not None else True)

    logger.warning(f"Unknown condition operator {condition.operator!r}, failing closed")
    return False


def evaluate_conditions(conditions: List[StepCondition], context: Dict[str, Any]) -> bool:
    """AND of all conditions; an empty list is always true."""
    return all(evaluate_condition(c, context) for c in conditions)


def resolve_deadline_hours(formula: Optional[str], context: Dict[str, Any]) -> Optional[float]:
    """
    Dynamic deadlines name a context field holding the number of hours,
    e.g. "variables.slaHours" or "document.metadata.reviewHours".
    """
    if not formula:
        return None
    value = get_field_value(formula.strip(), context)
    try:
        hours = float(value)
    except (TypeError, ValueError):
        logger.warning(f"Deadline formula {formula!r} did not resolve to a number")
        return None
    return hours if hours > 0 else None
