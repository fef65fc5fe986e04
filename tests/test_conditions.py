# tests/test_conditions.py
import pytest

from docflow.engine.conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_field_value,
    resolve_deadline_hours,
)
from docflow.models import StepCondition

CTX = {
    "variables": {"priority": "high", "slaHours": "36", "tags": ["urgent", "q3"]},
    "document": {"fileType": "pdf", "metadata": {"amount": 1500, "vendor": "ACME Corp"}},
    "steps": {"review": {"status": "completed", "formData": {"ok": True}}},
}


def cond(field, operator, value=None):
    return StepCondition(field=field, operator=operator, value=value)


def test_dotted_lookup():
    assert get_field_value("document.metadata.amount", CTX) == 1500
    assert get_field_value("steps.review.formData.ok", CTX) is True
    assert get_field_value("document.metadata.amount.cents", CTX) is None
    assert get_field_value("nothing.here", CTX) is None


@pytest.mark.parametrize(
    "condition, expected",
    [
        (cond("variables.priority", "eq", "high"), True),
        (cond("variables.priority", "ne", "high"), False),
        (cond("document.metadata.amount", "gt", 1000), True),
        (cond("document.metadata.amount", "gte", 1500), True),
        (cond("document.metadata.amount", "lt", "2000"), True),
        (cond("document.metadata.amount", "lte", 1499), False),
        (cond("document.fileType", "in", ["pdf", "docx"]), True),
        (cond("document.fileType", "not_in", ["pdf"]), False),
        (cond("document.metadata.vendor", "contains", "ACME"), True),
        (cond("variables.tags", "contains", "urgent"), True),
        (cond("variables.missing", "exists"), False),
        (cond("variables.missing", "exists", False), True),
        (cond("steps.review.status", "eq", "completed"), True),
    ],
)
def test_operators(condition, expected):
    assert evaluate_condition(condition, CTX) is expected


def test_numeric_operators_on_non_numbers_are_false():
    assert evaluate_condition(cond("variables.priority", "gt", 1), CTX) is False


def test_unknown_operator_fails_closed():
    assert evaluate_condition(cond("variables.priority", "matches", ".*"), CTX) is False


def test_conditions_are_anded():
    assert evaluate_conditions([], CTX) is True
    assert evaluate_conditions(
        [cond("variables.priority", "eq", "high"), cond("document.metadata.amount", "gt", 5000)], CTX
    ) is False


def test_deadline_formula():
    assert resolve_deadline_hours("variables.slaHours", CTX) == 36.0
    assert resolve_deadline_hours("document.metadata.amount", CTX) == 1500.0
    assert resolve_deadline_hours("variables.priority", CTX) is None
    assert resolve_deadline_hours("variables.missing", CTX) is None
    assert resolve_deadline_hours("", CTX) is None
