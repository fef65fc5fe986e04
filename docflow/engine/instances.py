"""
Instance Engine
State machine for workflow instances and their step states.

Every mutating call runs in one session/transaction:
    load instance (FOR UPDATE) -> validate -> compare-and-set lock_version ->
    mutate rows -> publish events -> commit
Any exception before the commit leaves the database untouched.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import Engine, update
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import Session, select

from ..converters import (
    dumps,
    loads,
    parse_steps,
    instance_to_dto,
    step_to_dto,
    step_assignees,
    step_decisions,
    event_to_dto,
)
from ..errors import (
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
from ..logging_config import get_logger
from ..models import (
    ActorContext,
    AUTO_STEP_TYPES,
    COMPLETING_ACTIONS,
    Decision,
    DeadlineType,
    DocumentTable,
    InstanceDTO,
    InstanceStatus,
    InstanceTable,
    PermissionContext,
    StepAction,
    StepSpec,
    StepStateTable,
    StepStatus,
    StepType,
    TaskDTO,
    TemplateTable,
    TERMINAL_STEP_STATUSES,
    WorkflowEventDTO,
    WorkflowEventTable,
)
from ..util import new_id, resolve_now
from . import assignment
from .conditions import evaluate_conditions, resolve_deadline_hours
from .events import EventType, WorkflowSubject
from .permissions import PermissionEvaluator, is_admin

logger = get_logger(__name__)

_TERMINAL = {s.value for s in TERMINAL_STEP_STATUSES}
_SATISFIED = {StepStatus.completed.value, StepStatus.skipped.value}


# ============================================================================
# Shared helpers (also used by the SLA monitor)
# ============================================================================

def load_instance(session: Session, instance_id: str) -> InstanceTable:
    row = session.exec(
        select(InstanceTable).where(InstanceTable.id == instance_id).with_for_update()
    ).first()
    if not row:
        raise InstanceNotFoundError(instance_id)
    return row


def load_steps(session: Session, instance_id: str) -> List[StepStateTable]:
    return list(session.exec(
        select(StepStateTable)
        .where(StepStateTable.instance_id == instance_id)
        .order_by(StepStateTable.position)
    ).all())


def bump_version(session: Session, instance: InstanceTable, expected: Optional[int] = None) -> None:
    """
    Optimistic lock: advance lock_version only if nobody else did since we read it.
    Raises ConflictError when the row moved on.
    """
    current = instance.lock_version
    if expected is not None and expected != current:
        raise ConflictError(
            "Workflow instance was modified concurrently",
            details={"id": instance.id, "expected": expected, "actual": current},
        )
    result = session.execute(
        update(InstanceTable)
        .where(InstanceTable.id == instance.id, InstanceTable.lock_version == current)
        .values(lock_version=current + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(
            "Workflow instance was modified concurrently",
            details={"id": instance.id, "expected": current},
        )
    set_committed_value(instance, "lock_version", current + 1)


def permission_context(document: Optional[DocumentTable]) -> PermissionContext:
    if document is None:
        return PermissionContext()
    return PermissionContext(
        file_type=document.file_type,
        department=document.department_id,
        metadata=loads(document.meta, {}),
    )


def sync_current_index(instance: InstanceTable, steps: List[StepStateTable]) -> None:
    """Point current_step_index at the lowest step that is still open."""
    if instance.status == InstanceStatus.active.value:
        for step in steps:
            if step.status not in _TERMINAL:
                instance.current_step_index = step.position
                return
        instance.current_step_index = len(steps)
    elif instance.status == InstanceStatus.completed.value:
        instance.current_step_index = len(steps)


def build_context(
    instance: InstanceTable,
    document: Optional[DocumentTable],
    steps: List[StepStateTable],
) -> Dict[str, Any]:
    """
    Values step conditions and deadline formulas can reference:
    variables.*, document.*, initiator, steps.<stepKey>.status / .formData.*
    """
    doc: Dict[str, Any] = {}
    if document is not None:
        doc = {
            "id": document.id,
            "title": document.title,
            "fileType": document.file_type,
            "ownerId": document.owner_id,
            "departmentId": document.department_id,
            "metadata": loads(document.meta, {}),
        }
    return {
        "variables": loads(instance.variables, {}),
        "document": doc,
        "initiator": instance.initiator_id,
        "steps": {
            s.step_key: {"status": s.status, "formData": loads(s.form_data, {})}
            for s in steps
        },
    }


def spec_deadline_hours(spec: StepSpec, context: Dict[str, Any]) -> Optional[float]:
    if spec.deadline is None:
        return None
    if spec.deadline.type == DeadlineType.fixed:
        return spec.deadline.hours
    return resolve_deadline_hours(spec.deadline.formula, context)


class InstanceEngine:
    """Starts, advances and cancels workflow instances"""

    def __init__(self, engine: Engine, permissions: PermissionEvaluator, events: WorkflowSubject):
        self.engine = engine
        self.permissions = permissions
        self.events = events

    # ========================================================================
    # Activation
    # ========================================================================

    def _ready_steps(
        self,
        steps: List[StepStateTable],
        specs: Dict[str, StepSpec],
        sequential: bool,
    ) -> List[StepStateTable]:
        if sequential:
            for step in steps:
                if step.status not in _TERMINAL:
                    return [step] if step.status == StepStatus.pending.value else []
            return []

        status_by_key = {s.step_key: s.status for s in steps}
        return [
            s for s in steps
            if s.status == StepStatus.pending.value
            and all(status_by_key.get(dep) in _SATISFIED for dep in specs[s.step_key].dependencies)
        ]

    def _activate(
        self,
        session: Session,
        instance: InstanceTable,
        step: StepStateTable,
        spec: StepSpec,
        document: Optional[DocumentTable],
        steps: List[StepStateTable],
        now: datetime,
    ) -> None:
        context = build_context(instance, document, steps)
        base = {"step_key": step.step_key, "step_name": step.name, "initiator_id": instance.initiator_id}

        if spec.conditions and not evaluate_conditions(spec.conditions, context):
            step.status = StepStatus.skipped.value
            step.completed_at = now
            self.events.publish(session, EventType.STEP_SKIPPED, instance.id, base, step_id=step.id, now=now)
            return

        if spec.type == StepType.CONDITION:
            step.status = StepStatus.completed.value
            step.started_at = now
            step.completed_at = now
            self.events.publish(
                session, EventType.STEP_COMPLETED, instance.id, {**base, "automatic": True},
                step_id=step.id, now=now,
            )
            return

        assign_ctx = assignment.AssignmentContext(
            session, instance.initiator_id, document, loads(instance.variables, {})
        )
        assignees = assignment.resolve(spec.assign_to, assign_ctx)
        step.assignees = dumps(assignees)
        step.started_at = now

        if spec.type in AUTO_STEP_TYPES:
            self.events.publish(
                session, EventType.STEP_NOTIFIED, instance.id,
                {**base, "assignees": assignees, "description": spec.description},
                step_id=step.id, now=now,
            )
            step.status = StepStatus.completed.value
            step.completed_at = now
            self.events.publish(
                session, EventType.STEP_COMPLETED, instance.id, {**base, "automatic": True},
                step_id=step.id, now=now,
            )
            return

        if not assignees:
            logger.warning(
                f"Step '{step.step_key}' resolved to no assignees",
                extra={"instance_id": instance.id, "step_id": step.id},
            )

        hours = spec_deadline_hours(spec, context)
        step.deadline = now + timedelta(hours=hours) if hours else None
        step.status = StepStatus.in_progress.value
        self.events.publish(
            session, EventType.STEP_ACTIVATED, instance.id,
            {
                **base,
                "assignees": assignees,
                "deadline": step.deadline.isoformat() if step.deadline else None,
            },
            step_id=step.id, now=now,
        )

    def _complete_instance(self, session: Session, instance: InstanceTable, now: datetime) -> None:
        instance.status = InstanceStatus.completed.value
        instance.completed_at = now
        self.events.publish(
            session, EventType.INSTANCE_COMPLETED, instance.id,
            {"initiator_id": instance.initiator_id}, now=now,
        )

    def _advance(
        self,
        session: Session,
        instance: InstanceTable,
        steps: List[StepStateTable],
        document: Optional[DocumentTable],
        now: datetime,
    ) -> None:
        """Activate whatever became ready, cascading through auto steps."""
        specs = {s.id: s for s in parse_steps(instance.steps_snapshot)}
        sequential = not any(spec.dependencies for spec in specs.values())

        while instance.status == InstanceStatus.active.value:
            if all(s.status in _SATISFIED for s in steps):
                self._complete_instance(session, instance, now)
                break
            ready = self._ready_steps(steps, specs, sequential)
            if not ready:
                break
            for step in ready:
                self._activate(session, instance, step, specs[step.step_key], document, steps, now)
            # Stop once a human step holds the instance
            if not any(s.status in _TERMINAL for s in ready):
                break

        sync_current_index(instance, steps)

    # ========================================================================
    # Operations
    # ========================================================================

    def start_instance(
        self,
        template_id: str,
        subject_ref: str,
        actor: ActorContext,
        variables: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> InstanceDTO:
        now = resolve_now(now)
        with Session(self.engine) as session:
            template = session.get(TemplateTable, template_id)
            if not template:
                raise TemplateNotFoundError(template_id)
            if not template.active:
                raise TemplateInactiveError(
                    f"Template {template_id} is inactive",
                    entity_id=template_id, expected="active", actual="inactive",
                )
            document = session.get(DocumentTable, subject_ref)
            if not document:
                raise SubjectNotFoundError(subject_ref)

            allowed = loads(template.file_types, [])
            if allowed and document.file_type not in allowed:
                raise ValidationError(
                    f"File type '{document.file_type}' is not accepted by this workflow",
                    details={"fileType": document.file_type, "allowed": allowed},
                )

            self.permissions.require(session, actor, template_id, "start", permission_context(document))

            specs = parse_steps(template.steps)
            instance = InstanceTable(
                id=new_id("wfi_"),
                template_id=template.id,
                template_version=template.version,
                subject_ref=subject_ref,
                initiator_id=actor.id,
                status=InstanceStatus.active.value,
                current_step_index=0,
                started_at=now,
                variables=dumps(variables or {}),
                steps_snapshot=template.steps,
                sla_snapshot=template.sla,
                lock_version=0,
            )
            session.add(instance)
            steps = [
                StepStateTable(
                    id=new_id("stp_"),
                    instance_id=instance.id,
                    step_key=spec.id,
                    position=index,
                    name=spec.name,
                    type=spec.type.value,
                    status=StepStatus.pending.value,
                )
                for index, spec in enumerate(specs)
            ]
            session.add_all(steps)
            session.flush()

            self.events.publish(
                session, EventType.INSTANCE_STARTED, instance.id,
                {"initiator_id": actor.id, "template_name": template.name, "subject_ref": subject_ref},
                actor_id=actor.id, now=now,
            )
            self._advance(session, instance, steps, document, now)

            session.add(instance)
            session.add_all(steps)
            session.commit()
            session.refresh(instance)
            steps = load_steps(session, instance.id)
            logger.info(
                "Workflow instance started",
                extra={"instance_id": instance.id, "template_id": template_id, "actor_id": actor.id},
            )
            return instance_to_dto(instance, steps)

    def process_step(
        self,
        instance_id: str,
        step_id: str,
        actor: ActorContext,
        action: Union[StepAction, str],
        remarks: Optional[str] = None,
        form_data: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> InstanceDTO:
        """
        Record one actor's decision on an in-progress step and advance the instance.

        `step_id` may be the step state id or the step key from the template.
        """
        try:
            action = StepAction(action)
        except ValueError:
            raise ValidationError(
                f"Unknown action '{action}'",
                details={"allowed": [a.value for a in StepAction]},
            ) from None
        now = resolve_now(now)

        with Session(self.engine) as session:
            instance = load_instance(session, instance_id)
            if instance.status != InstanceStatus.active.value:
                raise InvalidStateTransitionError(
                    f"Workflow instance is {instance.status}",
                    entity_id=instance.id, expected=InstanceStatus.active.value, actual=instance.status,
                )

            steps = load_steps(session, instance.id)
            step = next((s for s in steps if s.id == step_id), None) or next(
                (s for s in steps if s.step_key == step_id), None
            )
            if step is None:
                raise StepNotFoundError(step_id)
            if step.status != StepStatus.in_progress.value:
                raise StepNotActiveError(
                    f"Step '{step.step_key}' is {step.status}",
                    entity_id=step.id, expected=StepStatus.in_progress.value, actual=step.status,
                )

            document = session.get(DocumentTable, instance.subject_ref)
            assignees = step_assignees(step)
            if actor.id not in assignees and not self.permissions.check(
                session, actor, instance.template_id, "manage", permission_context(document)
            ):
                raise NotAuthorizedError(
                    "Only the step's assignees can act on it",
                    details={"stepId": step.id, "actorId": actor.id, "assignees": assignees},
                )

            decisions = step_decisions(step)
            if any(d.user_id == actor.id for d in decisions):
                raise InvalidStateTransitionError(
                    "Actor already decided on this step",
                    entity_id=step.id, details={"actorId": actor.id},
                )

            bump_version(session, instance, expected_version)

            decisions.append(Decision(user_id=actor.id, action=action, remarks=remarks, timestamp=now))
            step.decisions = dumps(decisions)
            if form_data:
                step.form_data = dumps({**loads(step.form_data, {}), **form_data})

            base = {"step_key": step.step_key, "step_name": step.name, "initiator_id": instance.initiator_id}
            self.events.publish(
                session, EventType.STEP_DECISION, instance.id,
                {**base, "action": action.value, "remarks": remarks},
                step_id=step.id, actor_id=actor.id, now=now,
            )

            specs = {s.id: s for s in parse_steps(instance.steps_snapshot)}
            spec = specs[step.step_key]

            if action == StepAction.reject:
                step.status = StepStatus.rejected.value
                step.completed_at = now
                instance.status = InstanceStatus.rejected.value
                instance.completed_at = now
                instance.current_step_index = step.position
                self.events.publish(
                    session, EventType.STEP_REJECTED, instance.id, {**base, "remarks": remarks},
                    step_id=step.id, actor_id=actor.id, now=now,
                )
                self.events.publish(
                    session, EventType.INSTANCE_REJECTED, instance.id,
                    {"initiator_id": instance.initiator_id, "remarks": remarks, "step_key": step.step_key},
                    step_id=step.id, actor_id=actor.id, now=now,
                )
            else:
                if spec.parallel:
                    approvers = {d.user_id for d in decisions if d.action in COMPLETING_ACTIONS}
                    # only current assignees fill the quorum; override decisions are just recorded
                    if assignees:
                        approvers &= set(assignees)
                    done = len(approvers) >= self.quorum(spec, assignees)
                else:
                    done = True

                if done:
                    step.status = StepStatus.completed.value
                    step.completed_at = now
                    self.events.publish(
                        session, EventType.STEP_COMPLETED, instance.id, base,
                        step_id=step.id, actor_id=actor.id, now=now,
                    )
                    self._advance(session, instance, steps, document, now)
                else:
                    sync_current_index(instance, steps)

            session.add(instance)
            session.add_all(steps)
            session.commit()
            session.refresh(instance)
            logger.info(
                f"Step {action.value} recorded",
                extra={
                    "instance_id": instance.id,
                    "step_id": step.id,
                    "actor_id": actor.id,
                    "action": action.value,
                    "status": instance.status,
                },
            )
            return instance_to_dto(instance, load_steps(session, instance.id))

    @staticmethod
    def quorum(spec: StepSpec, assignees: List[str]) -> int:
        """requiredApprovals capped at the number of assignees; all of them when unset."""
        if not assignees:
            return 1
        required = spec.required_approvals or len(assignees)
        return max(1, min(required, len(assignees)))

    def cancel_instance(
        self,
        instance_id: str,
        reason: str,
        actor: ActorContext,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> InstanceDTO:
        now = resolve_now(now)
        with Session(self.engine) as session:
            instance = load_instance(session, instance_id)
            if instance.status != InstanceStatus.active.value:
                raise InvalidStateTransitionError(
                    f"Cannot cancel a {instance.status} workflow",
                    entity_id=instance.id, expected=InstanceStatus.active.value, actual=instance.status,
                )

            document = session.get(DocumentTable, instance.subject_ref)
            if actor.id != instance.initiator_id and not is_admin(actor):
                self.permissions.require(session, actor, instance.template_id, "cancel", permission_context(document))

            bump_version(session, instance, expected_version)

            steps = load_steps(session, instance.id)
            open_assignees: List[str] = []
            for step in steps:
                if step.status == StepStatus.in_progress.value:
                    open_assignees.extend(step_assignees(step))

            instance.status = InstanceStatus.cancelled.value
            instance.completed_at = now
            instance.cancel_reason = reason
            self.events.publish(
                session, EventType.INSTANCE_CANCELLED, instance.id,
                {"initiator_id": instance.initiator_id, "reason": reason, "assignees": open_assignees},
                actor_id=actor.id, now=now,
            )
            session.add(instance)
            session.commit()
            session.refresh(instance)
            logger.info("Workflow instance cancelled", extra={"instance_id": instance.id, "actor_id": actor.id})
            return instance_to_dto(instance, steps)

    # ========================================================================
    # Queries
    # ========================================================================

    def _can_view(
        self,
        session: Session,
        actor: ActorContext,
        instance: InstanceTable,
        steps: List[StepStateTable],
    ) -> bool:
        """Participants always see their instance; everyone else needs `view`."""
        if actor.id == instance.initiator_id:
            return True
        for step in steps:
            if actor.id in step_assignees(step) or any(d.user_id == actor.id for d in step_decisions(step)):
                return True
        document = session.get(DocumentTable, instance.subject_ref)
        return self.permissions.check(session, actor, instance.template_id, "view", permission_context(document))

    def _require_view(
        self,
        session: Session,
        actor: Optional[ActorContext],
        instance: InstanceTable,
        steps: List[StepStateTable],
    ) -> None:
        if actor is not None and not self._can_view(session, actor, instance, steps):
            raise NotAuthorizedError(
                f"Missing permission 'view' on template {instance.template_id}",
                details={"permission": "view", "instanceId": instance.id, "actorId": actor.id},
            )

    def get_instance(self, instance_id: str, actor: Optional[ActorContext] = None) -> InstanceDTO:
        """`actor` limits the read to what the caller may see; None is an internal read."""
        with Session(self.engine) as session:
            instance = session.get(InstanceTable, instance_id)
            if not instance:
                raise InstanceNotFoundError(instance_id)
            steps = load_steps(session, instance.id)
            self._require_view(session, actor, instance, steps)
            return instance_to_dto(instance, steps)

    def list_instances(
        self,
        status: Optional[InstanceStatus] = None,
        subject_ref: Optional[str] = None,
        template_id: Optional[str] = None,
        actor: Optional[ActorContext] = None,
    ) -> List[InstanceDTO]:
        with Session(self.engine) as session:
            stmt = select(InstanceTable)
            if status is not None:
                stmt = stmt.where(InstanceTable.status == status.value)
            if subject_ref:
                stmt = stmt.where(InstanceTable.subject_ref == subject_ref)
            if template_id:
                stmt = stmt.where(InstanceTable.template_id == template_id)
            rows = session.exec(stmt.order_by(InstanceTable.started_at.desc(), InstanceTable.id.desc())).all()
            result = []
            for row in rows:
                steps = load_steps(session, row.id)
                if actor is None or self._can_view(session, actor, row, steps):
                    result.append(instance_to_dto(row, steps))
            return result

    def my_tasks(self, actor: ActorContext) -> List[TaskDTO]:
        """In-progress steps of active instances assigned to the actor."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(StepStateTable, InstanceTable)
                .join(InstanceTable, InstanceTable.id == StepStateTable.instance_id)
                .where(
                    StepStateTable.status == StepStatus.in_progress.value,
                    InstanceTable.status == InstanceStatus.active.value,
                    StepStateTable.assignees.contains(f'"{actor.id}"'),
                )
                .order_by(StepStateTable.deadline, StepStateTable.id)
            ).all()
            return [
                TaskDTO(
                    instance_id=instance.id,
                    template_id=instance.template_id,
                    subject_ref=instance.subject_ref,
                    step=step_to_dto(step),
                )
                for step, instance in rows
                if actor.id in step_assignees(step)
            ]

    def list_events(self, instance_id: str, actor: Optional[ActorContext] = None) -> List[WorkflowEventDTO]:
        with Session(self.engine) as session:
            instance = session.get(InstanceTable, instance_id)
            if not instance:
                raise InstanceNotFoundError(instance_id)
            self._require_view(session, actor, instance, load_steps(session, instance.id))
            rows = session.exec(
                select(WorkflowEventTable)
                .where(WorkflowEventTable.instance_id == instance_id)
                .order_by(WorkflowEventTable.seq)
            ).all()
            return [event_to_dto(r) for r in rows]
