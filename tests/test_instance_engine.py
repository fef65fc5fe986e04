# tests/test_instance_engine.py
"""
Instance engine: start, activation, step decisions, quorum, rejection,
cancellation and transactional behaviour. All timestamps are injected.
"""
from datetime import timedelta

import pytest

from conftest import T0, make_template
from docflow.errors import (
    ConflictError,
    InstanceNotFoundError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    StepNotActiveError,
    StepNotFoundError,
    SubjectNotFoundError,
    TemplateInactiveError,
    TemplateNotFoundError,
    ValidationError,
)
from docflow.models import (
    DocumentCreateDTO,
    EntityType,
    InstanceStatus,
    PermissionGrantCreateDTO,
    TemplateUpdateDTO,
)


def approval(step_id, assignees, hours=24, **extra):
    step = {
        "id": step_id,
        "name": step_id.title(),
        "type": "APPROVAL",
        "assignTo": {"kind": "user", "value": assignees},
        "deadline": {"type": "fixed", "hours": hours},
    }
    step.update(extra)
    return step


def grant(services, admin, template_id, entity_type, entity_id, permissions, priority=0):
    return services.permissions.create_grant(
        PermissionGrantCreateDTO(
            template_id=template_id,
            entity_type=entity_type,
            entity_id=entity_id,
            permissions=permissions,
            priority=priority,
        ),
        admin,
        now=T0,
    )


@pytest.fixture()
def two_step(services, seed):
    """[Approval(alice), Review(bob)], 24h each"""
    return make_template(services, seed.admin, [
        approval("approve", [seed.alice.id]),
        {
            "id": "review",
            "name": "Review",
            "type": "REVIEW",
            "assignTo": {"kind": "user", "value": [seed.bob.id]},
            "deadline": {"type": "fixed", "hours": 24},
        },
    ])


def start(services, seed, template, actor=None, now=T0, **kwargs):
    return services.instances.start_instance(
        template.id, seed.document.id, actor or seed.admin, now=now, **kwargs
    )


def statuses(instance):
    return [s.status.value for s in instance.steps]


# ============================================================================
# Start
# ============================================================================

def test_start_creates_one_state_per_step_and_activates_first(services, seed, two_step):
    inst = start(services, seed, two_step)

    assert len(inst.steps) == len(two_step.steps)
    assert statuses(inst) == ["in_progress", "pending"]
    assert inst.status.value == "active"
    assert inst.current_step_index == 0
    assert inst.template_version == two_step.version

    first = inst.steps[0]
    assert first.assignees == [seed.alice.id]
    assert first.started_at == T0
    assert first.deadline == T0 + timedelta(hours=24)


def test_start_fails_for_unknown_template(services, seed):
    with pytest.raises(TemplateNotFoundError):
        services.instances.start_instance("tpl_missing", seed.document.id, seed.admin, now=T0)


def test_start_fails_for_inactive_template(services, seed, two_step):
    services.templates.update_template(two_step.id, TemplateUpdateDTO(active=False), seed.admin)
    with pytest.raises(TemplateInactiveError) as exc:
        start(services, seed, two_step)
    assert exc.value.http_status == 409


def test_start_fails_for_unknown_document(services, seed, two_step):
    with pytest.raises(SubjectNotFoundError):
        services.instances.start_instance(two_step.id, "doc_missing", seed.admin, now=T0)


def test_start_rejects_file_type_outside_allow_list(services, seed, two_step):
    doc = services.directory.create_document(
        DocumentCreateDTO(title="Sheet", file_type="xlsx"), seed.alice
    )
    with pytest.raises(ValidationError):
        services.instances.start_instance(two_step.id, doc.id, seed.admin, now=T0)


def test_start_requires_start_permission(services, seed, two_step):
    with pytest.raises(NotAuthorizedError):
        start(services, seed, two_step, actor=seed.alice)

    grant(services, seed.admin, two_step.id, EntityType.role, "approver", {"start": True})
    inst = start(services, seed, two_step, actor=seed.alice)
    assert inst.initiator_id == seed.alice.id


# ============================================================================
# Sequential progression
# ============================================================================

def test_approve_activates_next_step_with_fresh_deadline(services, seed, two_step):
    inst = start(services, seed, two_step)
    t1 = T0 + timedelta(hours=1)

    inst = services.instances.process_step(
        inst.id, inst.steps[0].id, seed.alice, "approve", remarks="ok", now=t1
    )

    assert statuses(inst) == ["completed", "in_progress"]
    assert inst.current_step_index == 1
    assert inst.steps[0].completed_at == t1
    assert inst.steps[0].decisions[0].user_id == seed.alice.id
    assert inst.steps[0].decisions[0].remarks == "ok"
    assert inst.steps[1].deadline == t1 + timedelta(hours=24)

    # T0+30h is past step 2's deadline of T0+25h
    result = services.sla.scan(T0 + timedelta(hours=30))
    assert [s.id for s in result.breached] == [inst.steps[1].id]
    assert result.at_risk == []


def test_final_approval_completes_instance(services, seed, two_step):
    inst = start(services, seed, two_step)
    inst = services.instances.process_step(inst.id, "approve", seed.alice, "approve", now=T0)
    done_at = T0 + timedelta(hours=3)
    inst = services.instances.process_step(inst.id, "review", seed.bob, "review", now=done_at)

    assert inst.status.value == "completed"
    assert inst.completed_at == done_at
    assert inst.current_step_index == len(inst.steps)
    assert statuses(inst) == ["completed", "completed"]


def test_sequential_instance_never_has_two_steps_in_progress(services, seed):
    users = [seed.alice, seed.bob, seed.carol, seed.dave]
    template = make_template(services, seed.admin, [
        approval(f"s{i}", [u.id]) for i, u in enumerate(users)
    ])
    inst = start(services, seed, template)
    for i, user in enumerate(users):
        assert statuses(inst).count("in_progress") == 1
        assert inst.current_step_index == i
        inst = services.instances.process_step(inst.id, f"s{i}", user, "approve", now=T0)
    assert statuses(inst).count("in_progress") == 0
    assert inst.status.value == "completed"


def test_reject_is_terminal_and_leaves_later_steps_pending(services, seed, two_step):
    inst = start(services, seed, two_step)
    inst = services.instances.process_step(inst.id, "approve", seed.alice, "reject", remarks="no", now=T0)

    assert inst.status.value == "rejected"
    assert inst.completed_at == T0
    assert statuses(inst) == ["rejected", "pending"]
    assert inst.current_step_index == 0
    assert inst.steps[1].started_at is None


def test_step_can_be_addressed_by_state_id_or_key(services, seed, two_step):
    inst = start(services, seed, two_step)
    by_id = services.instances.process_step(inst.id, inst.steps[0].id, seed.alice, "approve", now=T0)
    assert by_id.steps[0].status.value == "completed"

    with pytest.raises(StepNotFoundError):
        services.instances.process_step(inst.id, "nope", seed.bob, "review", now=T0)


# ============================================================================
# Parallel steps
# ============================================================================

@pytest.fixture()
def parallel_template(services, seed):
    return make_template(services, seed.admin, [
        approval(
            "board",
            [seed.alice.id, seed.carol.id, seed.dave.id],
            parallel=True,
            requiredApprovals=2,
        ),
        approval("final", [seed.bob.id]),
    ])


def test_parallel_step_completes_on_quorum(services, seed, parallel_template):
    inst = start(services, seed, parallel_template)

    inst = services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)
    assert statuses(inst) == ["in_progress", "pending"]

    inst = services.instances.process_step(inst.id, "board", seed.carol, "approve", now=T0)
    assert statuses(inst) == ["completed", "in_progress"]
    assert {d.user_id for d in inst.steps[0].decisions} == {seed.alice.id, seed.carol.id}


def test_parallel_step_single_reject_rejects(services, seed, parallel_template):
    inst = start(services, seed, parallel_template)
    services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)
    inst = services.instances.process_step(inst.id, "board", seed.dave, "reject", now=T0)

    assert inst.status.value == "rejected"
    assert statuses(inst) == ["rejected", "pending"]


def test_parallel_without_required_approvals_needs_everyone(services, seed):
    template = make_template(services, seed.admin, [
        approval("all", [seed.alice.id, seed.carol.id], parallel=True),
    ])
    inst = start(services, seed, template)
    inst = services.instances.process_step(inst.id, "all", seed.alice, "approve", now=T0)
    assert inst.status.value == "active"
    inst = services.instances.process_step(inst.id, "all", seed.carol, "approve", now=T0)
    assert inst.status.value == "completed"


def test_quorum_is_capped_at_assignee_count(services, seed):
    template = make_template(services, seed.admin, [
        approval("few", [seed.alice.id], parallel=True, requiredApprovals=5),
    ])
    inst = start(services, seed, template)
    inst = services.instances.process_step(inst.id, "few", seed.alice, "approve", now=T0)
    assert inst.status.value == "completed"


def test_same_actor_cannot_decide_twice(services, seed, parallel_template):
    inst = start(services, seed, parallel_template)
    services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)
    with pytest.raises(InvalidStateTransitionError):
        services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)


def test_manage_override_does_not_fill_parallel_quorum(services, seed, parallel_template):
    grant(services, seed.admin, parallel_template.id, EntityType.user, seed.manager.id, {"manage": True})
    inst = start(services, seed, parallel_template)

    services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)
    inst = services.instances.process_step(inst.id, "board", seed.manager, "approve", now=T0)
    assert statuses(inst) == ["in_progress", "pending"]
    assert {d.user_id for d in inst.steps[0].decisions} == {seed.alice.id, seed.manager.id}

    inst = services.instances.process_step(inst.id, "board", seed.carol, "approve", now=T0)
    assert statuses(inst) == ["completed", "in_progress"]


def test_reassigned_away_approvals_do_not_count(services, seed, parallel_template):
    inst = start(services, seed, parallel_template)
    services.instances.process_step(inst.id, "board", seed.alice, "approve", now=T0)

    step_id = inst.steps[0].id
    services.sla.reassign(step_id, [seed.carol.id, seed.dave.id], "board change", seed.admin, now=T0)
    inst = services.instances.process_step(inst.id, "board", seed.carol, "approve", now=T0)
    assert statuses(inst) == ["in_progress", "pending"]

    inst = services.instances.process_step(inst.id, "board", seed.dave, "approve", now=T0)
    assert statuses(inst) == ["completed", "in_progress"]


# ============================================================================
# Guards
# ============================================================================

def test_non_assignee_is_not_authorized(services, seed, two_step):
    inst = start(services, seed, two_step)
    with pytest.raises(NotAuthorizedError):
        services.instances.process_step(inst.id, "approve", seed.bob, "approve", now=T0)


def test_manage_permission_overrides_assignment(services, seed, two_step):
    grant(services, seed.admin, two_step.id, EntityType.user, seed.manager.id, {"manage": True})
    inst = start(services, seed, two_step)
    inst = services.instances.process_step(inst.id, "approve", seed.manager, "approve", now=T0)
    assert inst.steps[0].status.value == "completed"


def test_acting_on_pending_step_is_step_not_active(services, seed, two_step):
    inst = start(services, seed, two_step)
    with pytest.raises(StepNotActiveError) as exc:
        services.instances.process_step(inst.id, "review", seed.bob, "review", now=T0)
    assert exc.value.details["expected"] == "in_progress"
    assert exc.value.details["actual"] == "pending"


def test_unknown_action_is_validation_error(services, seed, two_step):
    inst = start(services, seed, two_step)
    with pytest.raises(ValidationError):
        services.instances.process_step(inst.id, "approve", seed.alice, "escalate", now=T0)


def test_unknown_instance(services, seed):
    with pytest.raises(InstanceNotFoundError):
        services.instances.process_step("wfi_missing", "x", seed.alice, "approve", now=T0)


def test_failed_process_step_leaves_state_unchanged(services, seed, two_step):
    inst = start(services, seed, two_step)
    before = services.instances.get_instance(inst.id)
    events_before = services.instances.list_events(inst.id)

    with pytest.raises(NotAuthorizedError):
        services.instances.process_step(inst.id, "approve", seed.bob, "approve", now=T0)
    with pytest.raises(StepNotActiveError):
        services.instances.process_step(inst.id, "review", seed.bob, "review", now=T0)

    assert services.instances.get_instance(inst.id) == before
    assert services.instances.list_events(inst.id) == events_before


def test_stale_lock_version_is_conflict(services, seed, two_step):
    inst = start(services, seed, two_step)
    stale = inst.lock_version
    services.instances.process_step(inst.id, "approve", seed.alice, "approve", expected_version=stale, now=T0)

    with pytest.raises(ConflictError):
        services.instances.process_step(inst.id, "review", seed.bob, "review", expected_version=stale, now=T0)

    current = services.instances.get_instance(inst.id)
    assert current.steps[1].status.value == "in_progress"
    assert current.lock_version == stale + 1


# ============================================================================
# Cancellation
# ============================================================================

def test_initiator_can_cancel_and_steps_are_kept(services, seed, two_step):
    inst = start(services, seed, two_step)
    later = T0 + timedelta(hours=2)
    cancelled = services.instances.cancel_instance(inst.id, "duplicate", seed.admin, now=later)

    assert cancelled.status.value == "cancelled"
    assert cancelled.cancel_reason == "duplicate"
    assert cancelled.completed_at == later
    assert statuses(cancelled) == ["in_progress", "pending"]
    assert cancelled.current_step_index == inst.current_step_index

    with pytest.raises(InvalidStateTransitionError):
        services.instances.cancel_instance(inst.id, "again", seed.admin, now=later)
    with pytest.raises(InvalidStateTransitionError):
        services.instances.process_step(inst.id, "approve", seed.alice, "approve", now=later)


def test_cancel_requires_permission_for_others(services, seed, two_step):
    inst = start(services, seed, two_step)
    with pytest.raises(NotAuthorizedError):
        services.instances.cancel_instance(inst.id, "", seed.bob, now=T0)

    grant(services, seed.admin, two_step.id, EntityType.user, seed.bob.id, {"cancel": True})
    assert services.instances.cancel_instance(inst.id, "", seed.bob, now=T0).status.value == "cancelled"


def test_completed_instance_cannot_be_cancelled(services, seed):
    template = make_template(services, seed.admin, [approval("only", [seed.alice.id])])
    inst = start(services, seed, template)
    services.instances.process_step(inst.id, "only", seed.alice, "approve", now=T0)
    with pytest.raises(InvalidStateTransitionError):
        services.instances.cancel_instance(inst.id, "", seed.admin, now=T0)


# ============================================================================
# Auto steps, dependencies, deadlines
# ============================================================================

def test_condition_false_skips_step(services, seed):
    template = make_template(services, seed.admin, [
        approval(
            "big",
            [seed.manager.id],
            conditions=[{"field": "document.metadata.amount", "operator": "gt", "value": 5000}],
        ),
        approval("normal", [seed.alice.id]),
    ])
    inst = start(services, seed, template)
    assert statuses(inst) == ["skipped", "in_progress"]
    assert inst.current_step_index == 1


def test_condition_and_notification_steps_complete_on_their_own(services, seed):
    template = make_template(services, seed.admin, [
        {
            "id": "gate",
            "name": "Amount check",
            "type": "CONDITION",
            "conditions": [{"field": "document.metadata.amount", "operator": "lte", "value": 5000}],
        },
        {
            "id": "fyi",
            "name": "Inform manager",
            "type": "NOTIFY",
            "assignTo": {"kind": "dynamic", "value": "owner_manager"},
        },
        approval("sign", [seed.alice.id]),
    ])
    inst = start(services, seed, template)
    assert statuses(inst) == ["completed", "completed", "in_progress"]
    assert inst.steps[1].assignees == [seed.manager.id]

    inbox = services.notifications.list(seed.manager.id)
    assert inbox.total == 1
    assert inbox.items[0].type.value == "task_assigned"


def test_template_of_only_auto_steps_completes_at_start(services, seed):
    template = make_template(services, seed.admin, [
        {"id": "gate", "name": "Gate", "type": "CONDITION"},
    ])
    inst = start(services, seed, template)
    assert inst.status.value == "completed"
    assert inst.current_step_index == 1


def test_dependency_graph_activates_branches_together(services, seed):
    template = make_template(services, seed.admin, [
        approval("intake", [seed.alice.id]),
        approval("legal", [seed.bob.id], dependencies=["intake"]),
        approval("finance", [seed.carol.id], dependencies=["intake"]),
        approval("close", [seed.dave.id], dependencies=["legal", "finance"]),
    ])
    inst = start(services, seed, template)
    assert statuses(inst) == ["in_progress", "pending", "pending", "pending"]

    inst = services.instances.process_step(inst.id, "intake", seed.alice, "approve", now=T0)
    assert statuses(inst) == ["completed", "in_progress", "in_progress", "pending"]
    assert inst.current_step_index == 1

    inst = services.instances.process_step(inst.id, "finance", seed.carol, "approve", now=T0)
    assert statuses(inst) == ["completed", "in_progress", "completed", "pending"]

    inst = services.instances.process_step(inst.id, "legal", seed.bob, "approve", now=T0)
    assert statuses(inst) == ["completed", "completed", "completed", "in_progress"]
    assert inst.current_step_index == 3


def test_dynamic_deadline_reads_document_metadata(services, seed):
    template = make_template(services, seed.admin, [
        approval("timed", [seed.alice.id], deadline={"type": "dynamic", "formula": "document.metadata.reviewHours"}),
        approval("open", [seed.alice.id], deadline={"type": "dynamic", "formula": "variables.missing"}),
    ])
    inst = start(services, seed, template)
    assert inst.steps[0].deadline == T0 + timedelta(hours=12)

    inst = services.instances.process_step(inst.id, "timed", seed.alice, "approve", now=T0)
    assert inst.steps[1].deadline is None


def test_form_data_is_merged(services, seed, two_step):
    inst = start(services, seed, two_step)
    inst = services.instances.process_step(
        inst.id, "approve", seed.alice, "approve", form_data={"costCenter": "CC-7"}, now=T0
    )
    assert inst.steps[0].form_data == {"costCenter": "CC-7"}


def test_template_edit_does_not_touch_running_instance(services, seed, two_step):
    inst = start(services, seed, two_step)
    services.templates.update_template(
        two_step.id,
        TemplateUpdateDTO(steps=two_step.steps[:1]),
        seed.admin,
    )
    inst = services.instances.process_step(inst.id, "approve", seed.alice, "approve", now=T0)
    assert len(inst.steps) == 2
    assert inst.steps[1].status.value == "in_progress"
    assert inst.steps[1].assignees == [seed.bob.id]


# ============================================================================
# Queries & audit
# ============================================================================

def test_my_tasks_lists_in_progress_steps_for_actor(services, seed, two_step):
    inst = start(services, seed, two_step)
    tasks = services.instances.my_tasks(seed.alice)
    assert [(t.instance_id, t.step.step_key) for t in tasks] == [(inst.id, "approve")]
    assert services.instances.my_tasks(seed.bob) == []


def test_events_record_every_transition_in_order(services, seed, two_step):
    inst = start(services, seed, two_step)
    services.instances.process_step(inst.id, "approve", seed.alice, "approve", now=T0)
    services.instances.process_step(inst.id, "review", seed.bob, "review", now=T0)

    events = services.instances.list_events(inst.id)
    assert [e.event_type for e in events] == [
        "instance_started",
        "step_activated",
        "step_decision",
        "step_completed",
        "step_activated",
        "step_decision",
        "step_completed",
        "instance_completed",
    ]
    assert [e.seq for e in events] == list(range(1, len(events) + 1))


def test_list_instances_filters(services, seed, two_step):
    a = start(services, seed, two_step)
    b = start(services, seed, two_step)
    services.instances.cancel_instance(b.id, "", seed.admin, now=T0)

    active = services.instances.list_instances(status=InstanceStatus.active)
    assert [i.id for i in active] == [a.id]
    assert len(services.instances.list_instances(subject_ref=seed.document.id)) == 2


def test_reads_on_behalf_of_actor_need_participation_or_view(services, seed, two_step):
    inst = start(services, seed, two_step)
    services.instances.process_step(inst.id, "approve", seed.alice, "approve", now=T0)

    with pytest.raises(NotAuthorizedError):
        services.instances.get_instance(inst.id, seed.outsider)
    with pytest.raises(NotAuthorizedError):
        services.instances.list_events(inst.id, seed.outsider)
    assert services.instances.list_instances(actor=seed.outsider) == []

    # deciders keep access once the step has moved on
    assert services.instances.get_instance(inst.id, seed.alice).id == inst.id
    assert services.instances.get_instance(inst.id, seed.bob).id == inst.id

    grant(services, seed.admin, two_step.id, EntityType.role, "user", {"view": True})
    assert [i.id for i in services.instances.list_instances(actor=seed.outsider)] == [inst.id]
