# tests/test_permissions.py
import json
from datetime import datetime, timedelta

import pytest

from conftest import T0, make_template
from docflow.engine.permissions import merge_grants
from docflow.errors import (
    NotAuthorizedError,
    PermissionNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from docflow.models import (
    PERMISSION_KEYS,
    DocumentUpdateDTO,
    EntityType,
    PermissionConditions,
    PermissionContext,
    PermissionGrantCreateDTO,
    PermissionGrantTable,
    PermissionGrantUpdateDTO,
)

STEPS = [
    {
        "id": "approve",
        "name": "Approve",
        "type": "APPROVAL",
        "assignTo": {"kind": "role", "value": "approver"},
    }
]


@pytest.fixture()
def template(services, seed):
    return make_template(services, seed.admin, STEPS)


def add(services, seed, template, entity_type, entity_id, permissions, priority=0, conditions=None, now=T0):
    return services.permissions.create_grant(
        PermissionGrantCreateDTO(
            template_id=template.id,
            entity_type=entity_type,
            entity_id=entity_id,
            permissions=permissions,
            priority=priority,
            conditions=conditions,
        ),
        seed.admin,
        now=now,
    )


def effective(services, actor, template, **context):
    ctx = PermissionContext(**context) if context else None
    return services.permissions.effective_permissions(actor, template.id, ctx).permissions


# ============================================================================
# merge_grants (pure)
# ============================================================================

def row(entity_type, priority, perms, created=0):
    return PermissionGrantTable(
        id=f"perm_{entity_type}_{priority}_{created}",
        template_id="tpl",
        entity_type=entity_type,
        entity_id="x",
        permissions=json.dumps(perms),
        priority=priority,
        created_at=datetime(2026, 1, 1) + timedelta(seconds=created),
    )


def test_merge_without_grants_denies_everything():
    assert merge_grants([]) == {key: False for key in PERMISSION_KEYS}


def test_merge_takes_each_key_from_its_highest_defining_grant():
    merged = merge_grants([
        row("user", 5, {"view": True}),
        row("role", 1, {"view": False, "edit": True}),
    ])
    assert merged["view"] is True
    assert merged["edit"] is True
    assert merged["delete"] is False


def test_merge_tie_that_disagrees_denies():
    merged = merge_grants([
        row("role", 3, {"view": True, "edit": True}),
        row("user", 3, {"view": False}),
        row("department", 3, {"edit": True}, created=1),
    ])
    assert merged["view"] is False
    assert merged["edit"] is True


# ============================================================================
# Effective permissions
# ============================================================================

def test_higher_priority_user_grant_overrides_role_grant(services, seed, template):
    add(services, seed, template, EntityType.role, "approver", {"view": True}, priority=1)
    add(services, seed, template, EntityType.user, seed.alice.id, {"view": False}, priority=5)

    assert effective(services, seed.alice, template)["view"] is False
    # carol only has the role grant
    assert effective(services, seed.carol, template)["view"] is True


def test_department_grant_applies_to_members(services, seed, template):
    add(services, seed, template, EntityType.department, seed.dept.id, {"viewMetrics": True})
    assert effective(services, seed.bob, template)["viewMetrics"] is True
    assert effective(services, seed.outsider, template)["viewMetrics"] is False


def test_admin_has_every_permission(services, seed, template):
    add(services, seed, template, EntityType.role, "admin", {"view": False}, priority=100)
    assert all(effective(services, seed.admin, template).values())


def test_conditions_scope_grant_to_matching_context(services, seed, template):
    add(
        services, seed, template, EntityType.role, "reviewer", {"edit": True},
        conditions=PermissionConditions(file_types=["docx"], metadata={"confidential": False}),
    )
    assert effective(services, seed.bob, template, file_type="pdf")["edit"] is False
    assert effective(services, seed.bob, template, file_type="docx")["edit"] is True
    assert effective(
        services, seed.bob, template, file_type="docx", metadata={"confidential": True}
    )["edit"] is False
    assert effective(
        services, seed.bob, template, file_type="docx", metadata={"owner": "legal"}
    )["edit"] is False
    # fields the context does not carry are not checked
    assert effective(services, seed.bob, template)["edit"] is True


def test_metadata_condition_needs_key_on_document(services, seed, template):
    add(
        services, seed, template, EntityType.user, seed.bob.id, {"start": True},
        conditions=PermissionConditions(metadata={"confidential": False}),
    )
    # seeded document metadata has no "confidential" key
    with pytest.raises(NotAuthorizedError):
        services.instances.start_instance(template.id, seed.document.id, seed.bob, now=T0)

    services.directory.update_document(
        seed.document.id, DocumentUpdateDTO(metadata={"confidential": False}), now=T0
    )
    inst = services.instances.start_instance(template.id, seed.document.id, seed.bob, now=T0)
    assert inst.initiator_id == seed.bob.id


def test_department_condition(services, seed, template):
    add(
        services, seed, template, EntityType.user, seed.bob.id, {"exportData": True},
        conditions=PermissionConditions(departments=[seed.dept.id]),
    )
    assert effective(services, seed.bob, template, department=seed.dept.id)["exportData"] is True
    assert effective(services, seed.bob, template, department="dep_other")["exportData"] is False


def test_effective_for_unknown_template(services, seed):
    with pytest.raises(TemplateNotFoundError):
        services.permissions.effective_permissions(seed.alice, "tpl_missing")


# ============================================================================
# Grant management
# ============================================================================

def test_unknown_permission_key_is_rejected(services, seed, template):
    with pytest.raises(ValidationError) as exc:
        add(services, seed, template, EntityType.user, seed.bob.id, {"view": True, "fly": True})
    assert exc.value.problems == ["unknown permission 'fly'"]


def test_grant_management_requires_manage(services, seed, template):
    with pytest.raises(NotAuthorizedError):
        services.permissions.create_grant(
            PermissionGrantCreateDTO(
                template_id=template.id, entity_type=EntityType.user,
                entity_id=seed.bob.id, permissions={"view": True},
            ),
            seed.bob,
        )

    add(services, seed, template, EntityType.user, seed.bob.id, {"manage": True})
    grant = services.permissions.create_grant(
        PermissionGrantCreateDTO(
            template_id=template.id, entity_type=EntityType.role,
            entity_id="approver", permissions={"start": True},
        ),
        seed.bob,
    )
    assert grant.created_by == seed.bob.id


def test_grant_for_unknown_template(services, seed):
    with pytest.raises(TemplateNotFoundError):
        services.permissions.create_grant(
            PermissionGrantCreateDTO(
                template_id="tpl_missing", entity_type=EntityType.user,
                entity_id=seed.bob.id, permissions={"view": True},
            ),
            seed.admin,
        )


def test_list_is_ordered_by_priority(services, seed, template):
    add(services, seed, template, EntityType.department, seed.dept.id, {"view": True}, priority=1)
    add(services, seed, template, EntityType.user, seed.bob.id, {"view": True}, priority=9)
    add(services, seed, template, EntityType.role, "approver", {"view": True}, priority=9)

    listed = services.permissions.list_for_template(template.id)
    assert [(g.priority, g.entity_type.value) for g in listed] == [(9, "user"), (9, "role"), (1, "department")]


def test_update_and_delete_grant(services, seed, template):
    grant = add(services, seed, template, EntityType.user, seed.bob.id, {"view": True})

    updated = services.permissions.update_grant(
        grant.id, PermissionGrantUpdateDTO(permissions={"view": True, "edit": True}, priority=4), seed.admin
    )
    assert updated.permissions == {"view": True, "edit": True}
    assert updated.priority == 4
    assert effective(services, seed.bob, template)["edit"] is True

    services.permissions.delete_grant(grant.id, seed.admin)
    assert services.permissions.list_for_template(template.id) == []
    with pytest.raises(PermissionNotFoundError):
        services.permissions.delete_grant(grant.id, seed.admin)


def test_copy_reproduces_every_grant(services, seed, template):
    add(services, seed, template, EntityType.role, "approver", {"view": True, "start": True}, priority=2)
    add(
        services, seed, template, EntityType.user, seed.bob.id, {"edit": True}, priority=7,
        conditions=PermissionConditions(file_types=["pdf"]),
    )
    target = make_template(services, seed.admin, STEPS, name="Copy target")

    copies = services.permissions.copy_permissions(template.id, target.id, seed.admin, now=T0)
    assert len(copies) == 2
    assert all(c.template_id == target.id for c in copies)

    def content(grants):
        return sorted(
            (g.entity_type.value, g.entity_id, g.priority, tuple(sorted(g.permissions.items())),
             g.conditions.model_dump_json() if g.conditions else None)
            for g in grants
        )

    assert content(services.permissions.list_for_template(target.id)) == content(
        services.permissions.list_for_template(template.id)
    )
    # same decisions on both templates
    for actor in (seed.alice, seed.bob, seed.outsider):
        assert effective(services, actor, template, file_type="pdf") == effective(
            services, actor, target, file_type="pdf"
        )


def test_copy_checks_both_templates(services, seed, template):
    with pytest.raises(TemplateNotFoundError):
        services.permissions.copy_permissions("tpl_missing", template.id, seed.admin)
    with pytest.raises(TemplateNotFoundError):
        services.permissions.copy_permissions(template.id, "tpl_missing", seed.admin)
