"""
SLA Monitor
Classifies in-progress steps against their deadlines, sends warnings and
breach escalations once per level, and reassigns steps.

Classification for a step with a deadline, at time `now`:
    breached  when now > deadline
    at_risk   when deadline - warningThresholdHours <= now <= deadline
"""

from datetime import datetime, timedelta
from typing import List, Optional, Set, Tuple

from sqlalchemy import Engine, or_
from sqlmodel import Session, select

from ..config import settings
from ..converters import dumps, loads, parse_sla, parse_steps, step_assignees, step_to_dto
from ..errors import StepNotActiveError, StepNotFoundError, ValidationError
from ..logging_config import get_logger
from ..models import (
    ActorContext,
    DepartmentTable,
    DocumentTable,
    InstanceStatus,
    InstanceTable,
    ReassignmentEntry,
    SLACheckSummary,
    SLAConfig,
    SLALevel,
    SLA_LEVEL_RANK,
    SLAScanResult,
    SLAStatsDTO,
    StepStateDTO,
    StepStateTable,
    StepStatus,
    TemplateTable,
)
from ..util import resolve_now
from .events import EventType, WorkflowSubject
from .instances import (
    build_context,
    bump_version,
    load_instance,
    load_steps,
    permission_context,
    spec_deadline_hours,
)
from .permissions import PermissionEvaluator

logger = get_logger(__name__)


def sla_config(instance: InstanceTable) -> SLAConfig:
    """SLA settings frozen on the instance; unset threshold falls back to the configured default."""
    config = parse_sla(instance.sla_snapshot)
    if "warning_threshold_hours" not in config.model_fields_set:
        config.warning_threshold_hours = settings.sla_default_warning_hours
    return config


def classify(deadline: Optional[datetime], warning_hours: float, now: datetime) -> Optional[SLALevel]:
    if deadline is None:
        return None
    if now > deadline:
        return SLALevel.breached
    if deadline - timedelta(hours=warning_hours) <= now:
        return SLALevel.at_risk
    return None


class SLAMonitor:
    """Deadline tracking for in-progress steps"""

    def __init__(self, engine: Engine, permissions: PermissionEvaluator, events: WorkflowSubject):
        self.engine = engine
        self.permissions = permissions
        self.events = events

    def _open_steps(
        self, session: Session, template_ids: Optional[Set[str]] = None
    ) -> List[Tuple[StepStateTable, InstanceTable]]:
        """In-progress steps of active instances, with their instance"""
        stmt = (
            select(StepStateTable, InstanceTable)
            .join(InstanceTable, InstanceTable.id == StepStateTable.instance_id)
            .where(
                StepStateTable.status == StepStatus.in_progress.value,
                InstanceTable.status == InstanceStatus.active.value,
            )
        )
        if template_ids is not None:
            stmt = stmt.where(InstanceTable.template_id.in_(template_ids))
        return list(session.exec(stmt).all())

    def _classified(self, session: Session, now: datetime, template_ids: Optional[Set[str]] = None):
        at_risk, breached = [], []
        for step, instance in self._open_steps(session, template_ids):
            level = classify(step.deadline, sla_config(instance).warning_threshold_hours, now)
            if level == SLALevel.breached:
                breached.append((step, instance))
            elif level == SLALevel.at_risk:
                at_risk.append((step, instance))
        order = lambda pair: (pair[0].deadline, pair[0].id)  # noqa: E731
        return sorted(at_risk, key=order), sorted(breached, key=order)

    def _visible(self, session: Session, actor: Optional[ActorContext]) -> Optional[Set[str]]:
        """Reads on behalf of a caller cover the templates they hold `viewMetrics` on."""
        if actor is None:
            return None
        return self.permissions.templates_with(session, actor, "viewMetrics")

    # ========================================================================
    # Read side
    # ========================================================================

    def scan(self, now: Optional[datetime] = None, actor: Optional[ActorContext] = None) -> SLAScanResult:
        """Pure read: same persisted state and same `now` give the same result."""
        now = resolve_now(now)
        with Session(self.engine) as session:
            at_risk, breached = self._classified(session, now, self._visible(session, actor))
            return SLAScanResult(
                at_risk=[step_to_dto(s) for s, _ in at_risk],
                breached=[step_to_dto(s) for s, _ in breached],
            )

    def stats(self, now: Optional[datetime] = None, actor: Optional[ActorContext] = None) -> SLAStatsDTO:
        now = resolve_now(now)
        with Session(self.engine) as session:
            visible = self._visible(session, actor)
            open_steps = self._open_steps(session, visible)
            at_risk, breached = self._classified(session, now, visible)
        with_deadline = sum(1 for s, _ in open_steps if s.deadline is not None)
        return SLAStatsDTO(
            active_steps=len(open_steps),
            on_track=with_deadline - len(at_risk) - len(breached),
            at_risk=len(at_risk),
            breached=len(breached),
            without_deadline=len(open_steps) - with_deadline,
            breach_rate=round(len(breached) / with_deadline, 4) if with_deadline else 0.0,
        )

    def overdue(self, now: Optional[datetime] = None, actor: Optional[ActorContext] = None) -> List[StepStateDTO]:
        return self.scan(now, actor).breached

    def upcoming(
        self,
        now: Optional[datetime] = None,
        hours: float = 24,
        actor: Optional[ActorContext] = None,
    ) -> List[StepStateDTO]:
        """Steps whose deadline falls within the next `hours`."""
        now = resolve_now(now)
        horizon = now + timedelta(hours=hours)
        with Session(self.engine) as session:
            steps = [
                s for s, _ in self._open_steps(session, self._visible(session, actor))
                if s.deadline is not None and now <= s.deadline <= horizon
            ]
            steps.sort(key=lambda s: (s.deadline, s.id))
            return [step_to_dto(s) for s in steps]

    # ========================================================================
    # Reassignment
    # ========================================================================

    def _reassign_in_session(
        self,
        session: Session,
        instance: InstanceTable,
        step: StepStateTable,
        new_assignees: List[str],
        reason: str,
        actor_id: Optional[str],
        now: datetime,
        automatic: bool = False,
    ) -> None:
        previous = step_assignees(step)
        entries = loads(step.reassignments, [])
        entries.append(ReassignmentEntry(
            previous_assignees=previous,
            new_assignees=new_assignees,
            reason=reason,
            by=actor_id,
            at=now,
            automatic=automatic,
        ).model_dump(mode="json", by_alias=True, exclude_none=True))
        step.reassignments = dumps(entries)
        step.assignees = dumps(new_assignees)

        extended = False
        if settings.reassign_extends_deadline:
            specs = {s.id: s for s in parse_steps(instance.steps_snapshot)}
            document = session.get(DocumentTable, instance.subject_ref)
            hours = spec_deadline_hours(
                specs[step.step_key], build_context(instance, document, load_steps(session, instance.id))
            )
            if hours:
                step.deadline = now + timedelta(hours=hours)
                extended = True

        # A fresh owner gets fresh warnings; automatic handoffs keep the
        # watermark unless the clock was restarted.
        if not automatic or extended:
            step.last_notified_level = None
            step.last_notified_at = None

        session.add(step)
        self.events.publish(
            session, EventType.STEP_REASSIGNED, instance.id,
            {
                "step_key": step.step_key,
                "step_name": step.name,
                "previous_assignees": previous,
                "new_assignees": new_assignees,
                "reason": reason,
                "automatic": automatic,
            },
            step_id=step.id, actor_id=actor_id, now=now,
        )

    def reassign(
        self,
        step_id: str,
        new_assignees: List[str],
        reason: str,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> StepStateDTO:
        """Hand an in-progress step to other users. The deadline stays unless configured otherwise."""
        assignees = list(dict.fromkeys(a for a in new_assignees if a))
        if not assignees:
            raise ValidationError("At least one assignee is required", details={"stepId": step_id})
        now = resolve_now(now)

        with Session(self.engine) as session:
            step = session.get(StepStateTable, step_id)
            if not step:
                raise StepNotFoundError(step_id)
            instance = load_instance(session, step.instance_id)
            document = session.get(DocumentTable, instance.subject_ref)
            self.permissions.require(session, actor, instance.template_id, "reassign", permission_context(document))

            if step.status != StepStatus.in_progress.value or instance.status != InstanceStatus.active.value:
                raise StepNotActiveError(
                    f"Step '{step.step_key}' is {step.status}",
                    entity_id=step.id, expected=StepStatus.in_progress.value, actual=step.status,
                )

            bump_version(session, instance)
            self._reassign_in_session(session, instance, step, assignees, reason, actor.id, now)
            session.commit()
            session.refresh(step)
            logger.info(
                "Step reassigned",
                extra={"instance_id": instance.id, "step_id": step.id, "actor_id": actor.id},
            )
            return step_to_dto(step)

    def add_assignees(
        self,
        step_id: str,
        user_ids: List[str],
        reason: str,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> StepStateDTO:
        """Bring more users onto an in-progress step. Current holders, the deadline and the watermark stay."""
        now = resolve_now(now)
        with Session(self.engine) as session:
            step = session.get(StepStateTable, step_id)
            if not step:
                raise StepNotFoundError(step_id)
            instance = load_instance(session, step.instance_id)
            document = session.get(DocumentTable, instance.subject_ref)
            self.permissions.require(session, actor, instance.template_id, "assign", permission_context(document))

            if step.status != StepStatus.in_progress.value or instance.status != InstanceStatus.active.value:
                raise StepNotActiveError(
                    f"Step '{step.step_key}' is {step.status}",
                    entity_id=step.id, expected=StepStatus.in_progress.value, actual=step.status,
                )

            previous = step_assignees(step)
            added = [u for u in dict.fromkeys(user_ids) if u and u not in previous]
            if not added:
                raise ValidationError(
                    "No new assignees given",
                    details={"stepId": step.id, "assignees": previous},
                )

            bump_version(session, instance)
            entries = loads(step.reassignments, [])
            entries.append(ReassignmentEntry(
                previous_assignees=previous,
                new_assignees=previous + added,
                reason=reason,
                by=actor.id,
                at=now,
            ).model_dump(mode="json", by_alias=True, exclude_none=True))
            step.reassignments = dumps(entries)
            step.assignees = dumps(previous + added)
            session.add(step)
            self.events.publish(
                session, EventType.STEP_ASSIGNEES_ADDED, instance.id,
                {
                    "step_key": step.step_key,
                    "step_name": step.name,
                    "added": added,
                    "reason": reason,
                    "deadline": step.deadline.isoformat() if step.deadline else None,
                },
                step_id=step.id, actor_id=actor.id, now=now,
            )
            session.commit()
            session.refresh(step)
            logger.info(
                "Step assignees added",
                extra={"instance_id": instance.id, "step_id": step.id, "actor_id": actor.id, "count": len(added)},
            )
            return step_to_dto(step)

    # ========================================================================
    # Periodic check
    # ========================================================================

    def _department_head(self, session: Session, instance: InstanceTable) -> List[str]:
        """Head of the template's department, else of the document's department."""
        template = session.get(TemplateTable, instance.template_id)
        keys = []
        if template and template.department:
            keys.append(template.department)
        document = session.get(DocumentTable, instance.subject_ref)
        if document and document.department_id:
            keys.append(document.department_id)
        for key in keys:
            department = session.exec(
                select(DepartmentTable).where(
                    or_(DepartmentTable.id == key, DepartmentTable.code == key, DepartmentTable.name == key)
                )
            ).first()
            if department and department.head_id:
                return [department.head_id]
        return []

    def _check_step(self, step_id: str, now: datetime, summary: SLACheckSummary) -> None:
        with Session(self.engine) as session:
            step = session.get(StepStateTable, step_id)
            if step is None or step.status != StepStatus.in_progress.value:
                return
            instance = load_instance(session, step.instance_id)
            if instance.status != InstanceStatus.active.value:
                return

            config = sla_config(instance)
            level = classify(step.deadline, config.warning_threshold_hours, now)
            if level is None or SLA_LEVEL_RANK[level.value] <= SLA_LEVEL_RANK[step.last_notified_level]:
                return

            bump_version(session, instance)
            assignees = step_assignees(step)
            payload = {
                "step_key": step.step_key,
                "step_name": step.name,
                "assignees": assignees,
                "deadline": step.deadline.isoformat(),
            }

            if level == SLALevel.at_risk:
                self.events.publish(session, EventType.SLA_WARNING, instance.id, payload, step_id=step.id, now=now)
                summary.warnings_sent += 1
            else:
                escalate_to = self._department_head(session, instance)
                self.events.publish(
                    session, EventType.SLA_BREACH, instance.id, {**payload, "escalate_to": escalate_to},
                    step_id=step.id, now=now,
                )
                step.escalated = True
                summary.escalated += 1

            step.last_notified_level = level.value
            step.last_notified_at = now
            session.add(step)

            if level == SLALevel.breached and config.auto_reassign:
                backups = [b for b in config.backup_assignees.get(step.type, []) if b]
                if backups and backups != assignees:
                    self._reassign_in_session(
                        session, instance, step, backups, "SLA breached", None, now, automatic=True
                    )
                    summary.reassigned += 1

            session.commit()

    def run_check(self, now: Optional[datetime] = None) -> SLACheckSummary:
        """
        Scan, then notify each step at most once per level.
        Each step is handled in its own transaction; one failure does not stop the run.
        """
        now = resolve_now(now)
        with Session(self.engine) as session:
            at_risk, breached = self._classified(session, now)
            ids = [s.id for s, _ in at_risk] + [s.id for s, _ in breached]

        summary = SLACheckSummary(ran=True, at_risk=len(at_risk), breached=len(breached))
        for step_id in ids:
            try:
                self._check_step(step_id, now, summary)
            except Exception:
                logger.exception("SLA check failed for step", extra={"step_id": step_id})

        logger.info(
            "SLA check finished",
            extra={"count": len(ids), "action": "sla_check", "status": summary.model_dump_json()},
        )
        return summary
