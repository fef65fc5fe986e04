"""
Format Converters
Translates between database rows (JSON stored as text) and API DTOs.
"""

import json
from typing import Any, Dict, List, Optional

from .models import (
    UserTable,
    DepartmentTable,
    DocumentTable,
    TemplateTable,
    InstanceTable,
    StepStateTable,
    PermissionGrantTable,
    NotificationTable,
    WorkflowEventTable,
    UserDTO,
    DepartmentDTO,
    DocumentDTO,
    TemplateDTO,
    InstanceDTO,
    StepStateDTO,
    StepSpec,
    SLAConfig,
    Decision,
    ReassignmentEntry,
    PermissionGrantDTO,
    PermissionConditions,
    NotificationDTO,
    WorkflowEventDTO,
    ActorContext,
)


def dumps(value: Any) -> str:
    """Serialize a JSON column value. Pydantic models are dumped by alias."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    elif isinstance(value, list):
        value = [
            v.model_dump(mode="json", by_alias=True, exclude_none=True) if hasattr(v, "model_dump") else v
            for v in value
        ]
    return json.dumps(value, default=str)


def loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(raw)


# ============================================================================
# Directory
# ============================================================================

def user_to_dto(row: UserTable) -> UserDTO:
    return UserDTO(
        id=row.id,
        name=row.name,
        email=row.email,
        role=row.role,
        department_id=row.department_id,
        manager_id=row.manager_id,
        active=row.active,
        created_at=row.created_at,
    )


def user_to_actor(row: UserTable) -> ActorContext:
    return ActorContext(id=row.id, name=row.name, role=row.role, department_id=row.department_id)


def department_to_dto(row: DepartmentTable) -> DepartmentDTO:
    return DepartmentDTO(
        id=row.id,
        name=row.name,
        code=row.code,
        head_id=row.head_id,
        created_at=row.created_at,
    )


def document_to_dto(row: DocumentTable) -> DocumentDTO:
    return DocumentDTO(
        id=row.id,
        title=row.title,
        file_type=row.file_type,
        owner_id=row.owner_id,
        department_id=row.department_id,
        metadata=loads(row.meta, {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ============================================================================
# Templates
# ============================================================================

def parse_steps(raw: str) -> List[StepSpec]:
    return [StepSpec.model_validate(s) for s in loads(raw, [])]


def parse_sla(raw: str) -> SLAConfig:
    return SLAConfig.model_validate(loads(raw, {}))


def template_to_dto(row: TemplateTable) -> TemplateDTO:
    return TemplateDTO(
        id=row.id,
        name=row.name,
        description=row.description,
        department=row.department,
        file_types=loads(row.file_types, []),
        steps=parse_steps(row.steps),
        sla=parse_sla(row.sla),
        active=row.active,
        created_by=row.created_by,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ============================================================================
# Instances
# ============================================================================

def step_assignees(row: StepStateTable) -> List[str]:
    return loads(row.assignees, [])


def step_decisions(row: StepStateTable) -> List[Decision]:
    return [Decision.model_validate(d) for d in loads(row.decisions, [])]


def step_to_dto(row: StepStateTable) -> StepStateDTO:
    return StepStateDTO(
        id=row.id,
        instance_id=row.instance_id,
        step_key=row.step_key,
        position=row.position,
        name=row.name,
        type=row.type,
        status=row.status,
        assignees=step_assignees(row),
        deadline=row.deadline,
        decisions=step_decisions(row),
        form_data=loads(row.form_data, {}),
        started_at=row.started_at,
        completed_at=row.completed_at,
        last_notified_level=row.last_notified_level,
        escalated=row.escalated,
        reassignments=[ReassignmentEntry.model_validate(r) for r in loads(row.reassignments, [])],
    )


def instance_to_dto(row: InstanceTable, steps: List[StepStateTable]) -> InstanceDTO:
    ordered = sorted(steps, key=lambda s: s.position)
    return InstanceDTO(
        id=row.id,
        template_id=row.template_id,
        template_version=row.template_version,
        subject_ref=row.subject_ref,
        initiator_id=row.initiator_id,
        status=row.status,
        current_step_index=row.current_step_index,
        started_at=row.started_at,
        completed_at=row.completed_at,
        cancel_reason=row.cancel_reason,
        variables=loads(row.variables, {}),
        steps=[step_to_dto(s) for s in ordered],
        lock_version=row.lock_version,
    )


def event_to_dto(row: WorkflowEventTable) -> WorkflowEventDTO:
    return WorkflowEventDTO(
        id=row.id,
        instance_id=row.instance_id,
        seq=row.seq,
        step_id=row.step_id,
        event_type=row.event_type,
        actor_id=row.actor_id,
        data=loads(row.data, {}),
        created_at=row.created_at,
    )


# ============================================================================
# Permissions & notifications
# ============================================================================

def grant_permissions(row: PermissionGrantTable) -> Dict[str, bool]:
    return loads(row.permissions, {})


def grant_conditions(row: PermissionGrantTable) -> Optional[PermissionConditions]:
    raw = loads(row.conditions, None)
    return PermissionConditions.model_validate(raw) if raw else None


def grant_to_dto(row: PermissionGrantTable) -> PermissionGrantDTO:
    return PermissionGrantDTO(
        id=row.id,
        template_id=row.template_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        permissions=grant_permissions(row),
        priority=row.priority,
        conditions=grant_conditions(row),
        created_by=row.created_by,
        created_at=row.created_at,
    )


def notification_to_dto(row: NotificationTable) -> NotificationDTO:
    return NotificationDTO(
        id=row.id,
        recipient_id=row.recipient_id,
        instance_id=row.instance_id,
        step_id=row.step_id,
        type=row.type,
        priority=row.priority,
        title=row.title,
        message=row.message,
        read=row.read,
        read_at=row.read_at,
        action_url=row.action_url,
        created_at=row.created_at,
    )
