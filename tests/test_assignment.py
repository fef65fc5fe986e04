# tests/test_assignment.py
import pytest
from sqlmodel import Session

from conftest import T0, make_template
from docflow.engine import assignment
from docflow.engine.assignment import AssignmentContext, AssignmentStrategy
from docflow.errors import ValidationError
from docflow.models import AssignmentRule, DocumentTable, UserCreateDTO, UserUpdateDTO


def rule(kind, value):
    return AssignmentRule(kind=kind, value=value)


@pytest.fixture()
def ctx(engine, seed):
    with Session(engine) as session:
        document = session.get(DocumentTable, seed.document.id)
        yield AssignmentContext(session, seed.bob.id, document, {"reviewer": seed.carol.id})


def test_user_rule_keeps_order_and_drops_duplicates(ctx, seed):
    ids = [seed.dave.id, seed.alice.id, seed.dave.id]
    assert assignment.resolve(rule("user", ids), ctx) == [seed.dave.id, seed.alice.id]


def test_role_rule_returns_active_members(ctx, seed):
    assert set(assignment.resolve(rule("role", "approver"), ctx)) == {
        seed.alice.id, seed.carol.id, seed.dave.id,
    }


def test_department_rule_excludes_users_outside(ctx, seed):
    resolved = assignment.resolve(rule("department", [seed.dept.id]), ctx)
    assert seed.outsider.id not in resolved
    assert seed.alice.id in resolved


def test_missing_rule_resolves_to_nobody(ctx):
    assert assignment.resolve(None, ctx) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        ("initiator", "bob"),
        ("subject_owner", "alice"),
        ("owner_manager", "manager"),
        ("department_head", "head"),
        ("variable:reviewer", "carol"),
    ],
)
def test_builtin_strategies(ctx, seed, value, expected):
    assert assignment.resolve(rule("dynamic", value), ctx) == [getattr(seed, expected).id]


def test_department_head_with_explicit_department(ctx, seed):
    assert assignment.resolve(rule("dynamic", f"department_head:{seed.dept.id}"), ctx) == [seed.head.id]
    assert assignment.resolve(rule("dynamic", "department_head:dep_unknown"), ctx) == []


def test_variable_strategy_without_value(ctx):
    assert assignment.resolve(rule("dynamic", "variable:approver"), ctx) == []


def test_unknown_strategy_is_validation_error(ctx):
    with pytest.raises(ValidationError) as exc:
        assignment.resolve(rule("dynamic", "round_robin"), ctx)
    assert exc.value.details["strategy"] == "round_robin"


def test_registered_strategy_is_used(ctx, seed):
    class FixedStrategy(AssignmentStrategy):
        name = "audit_desk"

        def resolve(self, context, argument=None):
            return [seed.dave.id]

    assignment.register_strategy(FixedStrategy())
    try:
        assert assignment.is_known_strategy("audit_desk")
        assert assignment.resolve(rule("dynamic", ["audit_desk", "initiator"]), ctx) == [
            seed.dave.id, seed.bob.id,
        ]
    finally:
        assignment.unregister_strategy("audit_desk")
    assert not assignment.is_known_strategy("audit_desk")


def test_split_dynamic():
    assert assignment.split_dynamic("department_head: dep_1") == ("department_head", "dep_1")
    assert assignment.split_dynamic("initiator") == ("initiator", None)


# ============================================================================
# Roster changes between authoring and activation
# ============================================================================

def test_role_members_are_resolved_when_the_step_activates(services, seed):
    template = make_template(services, seed.admin, [
        {
            "id": "intake",
            "name": "Intake",
            "type": "TASK",
            "assignTo": {"kind": "user", "value": [seed.bob.id]},
        },
        {
            "id": "approve",
            "name": "Approve",
            "type": "APPROVAL",
            "assignTo": {"kind": "role", "value": "approver"},
            "parallel": True,
            "requiredApprovals": 1,
        },
    ])
    inst = services.instances.start_instance(template.id, seed.document.id, seed.admin, now=T0)

    # Roster changes after the instance started but before step 2 activates
    services.directory.update_user(seed.dave.id, UserUpdateDTO(active=False))
    newcomer = services.directory.create_user(UserCreateDTO(
        name="Nina", email="nina@example.com", role="approver", department_id=seed.dept.id,
    ))

    inst = services.instances.process_step(inst.id, "intake", seed.bob, "complete", now=T0)
    assert set(inst.steps[1].assignees) == {seed.alice.id, seed.carol.id, newcomer.id}
