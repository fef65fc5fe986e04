"""
Workflow Metrics
Performance figures computed from instance, step and event rows.

Periods are optional and inclusive: instances count by `started_at`, tasks by
the step's `started_at` and SLA notices by the event's `created_at`.

A task is a started step that is neither automatic nor skipped. A task is late
when it finished after its deadline; an unfinished task stops the clock when
its instance ended, else at `now`.
"""

import csv
from datetime import datetime
from io import StringIO
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Engine, or_
from sqlmodel import Session, select

from ..converters import loads, step_assignees, step_decisions
from ..errors import TemplateNotFoundError, UserNotFoundError
from ..logging_config import get_logger
from ..models import (
    AUTO_STEP_TYPES,
    ActorContext,
    DashboardMetricsDTO,
    DashboardOverview,
    DashboardPerformance,
    DashboardSLA,
    DepartmentPerformanceDTO,
    DepartmentTable,
    InstanceStatus,
    InstanceTable,
    SLAPerformanceDTO,
    StepStateTable,
    StepStatus,
    TemplatePerformanceDTO,
    TemplateTable,
    UserPerformanceDTO,
    UserTable,
    WorkflowEventTable,
)
from ..util import resolve_now
from .events import EventType
from .instances import load_steps
from .permissions import PermissionEvaluator

logger = get_logger(__name__)

AUTO_TYPES = {t.value for t in AUTO_STEP_TYPES}

EXPORT_COLUMNS = (
    "instance_id", "template_id", "template_version", "subject_ref", "initiator_id",
    "status", "started_at", "completed_at", "duration_hours",
    "steps_total", "steps_completed", "late_steps",
)


def in_period(value: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if value is None:
        return False
    if start is not None and value < start:
        return False
    return end is None or value <= end


def hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def average(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def percent(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 2) if whole else 0.0


def is_task(step: StepStateTable) -> bool:
    return (
        step.started_at is not None
        and step.type not in AUTO_TYPES
        and step.status != StepStatus.skipped.value
    )


def is_late(step: StepStateTable, instance: InstanceTable, now: datetime) -> bool:
    if step.deadline is None:
        return False
    return (step.completed_at or instance.completed_at or now) > step.deadline


def status_counts(instances: List[InstanceTable]) -> Dict[str, int]:
    counts = {s.value: 0 for s in InstanceStatus}
    for instance in instances:
        counts[instance.status] = counts.get(instance.status, 0) + 1
    return counts


def workflow_hours(instances: List[InstanceTable]) -> float:
    return average([
        hours(i.started_at, i.completed_at)
        for i in instances
        if i.status == InstanceStatus.completed.value and i.completed_at
    ])


def task_hours(tasks: List[Tuple[StepStateTable, InstanceTable]]) -> float:
    return average([
        hours(s.started_at, s.completed_at)
        for s, _ in tasks
        if s.status == StepStatus.completed.value and s.completed_at
    ])


class WorkflowMetrics:
    """Read-only performance reporting, scoped by `viewMetrics`"""

    def __init__(self, engine: Engine, permissions: PermissionEvaluator):
        self.engine = engine
        self.permissions = permissions

    # ========================================================================
    # Row selection
    # ========================================================================

    def _template(
        self,
        session: Session,
        actor: ActorContext,
        template_id: str,
        permission: str = "viewMetrics",
    ) -> TemplateTable:
        template = session.get(TemplateTable, template_id)
        if not template:
            raise TemplateNotFoundError(template_id)
        self.permissions.require(session, actor, template_id, permission)
        return template

    def _instances(
        self,
        session: Session,
        template_ids: Optional[Iterable[str]],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[InstanceTable]:
        stmt = select(InstanceTable)
        if template_ids is not None:
            stmt = stmt.where(InstanceTable.template_id.in_(list(template_ids)))
        if start is not None:
            stmt = stmt.where(InstanceTable.started_at >= start)
        if end is not None:
            stmt = stmt.where(InstanceTable.started_at <= end)
        return list(session.exec(stmt.order_by(InstanceTable.started_at, InstanceTable.id)).all())

    def _tasks(
        self,
        session: Session,
        template_ids: Optional[Iterable[str]],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[Tuple[StepStateTable, InstanceTable]]:
        stmt = select(StepStateTable, InstanceTable).join(
            InstanceTable, InstanceTable.id == StepStateTable.instance_id
        )
        if template_ids is not None:
            stmt = stmt.where(InstanceTable.template_id.in_(list(template_ids)))
        rows = session.exec(stmt.order_by(StepStateTable.started_at, StepStateTable.id)).all()
        return [(s, i) for s, i in rows if is_task(s) and in_period(s.started_at, start, end)]

    def _sla_events(
        self,
        session: Session,
        template_ids: Optional[Iterable[str]],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> List[Tuple[WorkflowEventTable, InstanceTable]]:
        stmt = (
            select(WorkflowEventTable, InstanceTable)
            .join(InstanceTable, InstanceTable.id == WorkflowEventTable.instance_id)
            .where(WorkflowEventTable.event_type.in_([EventType.SLA_WARNING, EventType.SLA_BREACH]))
        )
        if template_ids is not None:
            stmt = stmt.where(InstanceTable.template_id.in_(list(template_ids)))
        if start is not None:
            stmt = stmt.where(WorkflowEventTable.created_at >= start)
        if end is not None:
            stmt = stmt.where(WorkflowEventTable.created_at <= end)
        return list(session.exec(stmt).all())

    # ========================================================================
    # Reports
    # ========================================================================

    def template_performance(
        self,
        template_id: str,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> TemplatePerformanceDTO:
        with Session(self.engine) as session:
            self._template(session, actor, template_id)
            instances = self._instances(session, [template_id], start, end)
            events = self._sla_events(session, [template_id], start, end)
        counts = status_counts(instances)
        return TemplatePerformanceDTO(
            template_id=template_id,
            total_workflows=len(instances),
            completed_workflows=counts[InstanceStatus.completed.value],
            rejected_workflows=counts[InstanceStatus.rejected.value],
            cancelled_workflows=counts[InstanceStatus.cancelled.value],
            active_workflows=counts[InstanceStatus.active.value],
            completion_rate=percent(counts[InstanceStatus.completed.value], len(instances)),
            average_duration_hours=workflow_hours(instances),
            sla_breaches=sum(1 for e, _ in events if e.event_type == EventType.SLA_BREACH),
        )

    def sla_performance(
        self,
        template_id: str,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> SLAPerformanceDTO:
        """Deadline compliance of the template's tasks; 100% when none had a deadline."""
        now = resolve_now(now)
        with Session(self.engine) as session:
            self._template(session, actor, template_id)
            tasks = self._tasks(session, [template_id], start, end)
            events = self._sla_events(session, [template_id], start, end)

        timed = [(s, i) for s, i in tasks if s.deadline is not None]
        late = sum(1 for s, i in timed if is_late(s, i, now))
        breaches_by_step: Dict[str, int] = {}
        for event, _ in events:
            if event.event_type == EventType.SLA_BREACH:
                name = loads(event.data, {}).get("step_name") or "Unknown"
                breaches_by_step[name] = breaches_by_step.get(name, 0) + 1

        return SLAPerformanceDTO(
            template_id=template_id,
            steps_with_deadline=len(timed),
            late_steps=late,
            compliance_rate=percent(len(timed) - late, len(timed)) if timed else 100.0,
            warnings=sum(1 for e, _ in events if e.event_type == EventType.SLA_WARNING),
            breaches=sum(breaches_by_step.values()),
            breaches_by_step=breaches_by_step,
        )

    def department_performance(
        self,
        department: str,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> DepartmentPerformanceDTO:
        """Tasks of templates owned by the department (matched by id, code or name)."""
        now = resolve_now(now)
        with Session(self.engine) as session:
            keys = {department}
            row = session.exec(
                select(DepartmentTable).where(
                    or_(DepartmentTable.id == department, DepartmentTable.code == department)
                )
            ).first()
            if row:
                keys |= {row.id, row.code, row.name}
            template_ids = set(
                session.exec(select(TemplateTable.id).where(TemplateTable.department.in_(keys))).all()
            )
            visible = self.permissions.templates_with(session, actor, "viewMetrics")
            if visible is not None:
                template_ids &= visible
            tasks = self._tasks(session, template_ids, start, end)

        return DepartmentPerformanceDTO(
            department=department,
            total_tasks=len(tasks),
            completed_tasks=sum(1 for s, _ in tasks if s.status == StepStatus.completed.value),
            late_tasks=sum(1 for s, i in tasks if is_late(s, i, now)),
            average_task_hours=task_hours(tasks),
        )

    def user_performance(
        self,
        user_id: str,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> UserPerformanceDTO:
        """
        Tasks the user holds or decided on. Users always see their own
        figures; others see them for templates they hold `viewMetrics` on.
        """
        now = resolve_now(now)
        with Session(self.engine) as session:
            if not session.get(UserTable, user_id):
                raise UserNotFoundError(user_id)
            visible = None
            if actor.id != user_id:
                visible = self.permissions.templates_with(session, actor, "viewMetrics")
            tasks = self._tasks(session, visible, start, end)

        assigned = 0
        late = 0
        responses: List[float] = []
        for step, instance in tasks:
            decision = next((d for d in step_decisions(step) if d.user_id == user_id), None)
            if decision is None and user_id not in step_assignees(step):
                continue
            assigned += 1
            if is_late(step, instance, now):
                late += 1
            if decision is not None:
                responses.append(hours(step.started_at, decision.timestamp))

        return UserPerformanceDTO(
            user_id=user_id,
            assigned_tasks=assigned,
            decided_tasks=len(responses),
            late_tasks=late,
            average_response_hours=average(responses),
        )

    def dashboard(
        self,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> DashboardMetricsDTO:
        with Session(self.engine) as session:
            visible = self.permissions.templates_with(session, actor, "viewMetrics")
            instances = self._instances(session, visible, start, end)
            tasks = self._tasks(session, visible, start, end)
            events = self._sla_events(session, visible, start, end)
            templates = {t.id: t for t in session.exec(select(TemplateTable)).all()}

        breaches_by_template: Dict[str, int] = {}
        breaches_by_department: Dict[str, int] = {}
        warnings = 0
        for event, instance in events:
            if event.event_type != EventType.SLA_BREACH:
                warnings += 1
                continue
            template = templates.get(instance.template_id)
            name = template.name if template else instance.template_id
            breaches_by_template[name] = breaches_by_template.get(name, 0) + 1
            if template and template.department:
                breaches_by_department[template.department] = (
                    breaches_by_department.get(template.department, 0) + 1
                )

        started: Dict[str, int] = {}
        completed: Dict[str, int] = {}
        for instance in instances:
            started[instance.template_id] = started.get(instance.template_id, 0) + 1
            if instance.status == InstanceStatus.completed.value:
                completed[instance.template_id] = completed.get(instance.template_id, 0) + 1

        counts = status_counts(instances)
        return DashboardMetricsDTO(
            overview=DashboardOverview(
                total_workflows=len(instances),
                completed_workflows=counts[InstanceStatus.completed.value],
                active_workflows=counts[InstanceStatus.active.value],
                rejected_workflows=counts[InstanceStatus.rejected.value],
                cancelled_workflows=counts[InstanceStatus.cancelled.value],
                total_tasks=len(tasks),
                completed_tasks=sum(1 for s, _ in tasks if s.status == StepStatus.completed.value),
            ),
            sla_compliance=DashboardSLA(
                warnings=warnings,
                breaches=sum(breaches_by_template.values()),
                breaches_by_template=breaches_by_template,
                breaches_by_department=breaches_by_department,
            ),
            performance=DashboardPerformance(
                average_workflow_hours=workflow_hours(instances),
                average_task_hours=task_hours(tasks),
                completion_rate_by_template={
                    template_id: percent(completed.get(template_id, 0), total)
                    for template_id, total in started.items()
                },
            ),
        )

    # ========================================================================
    # Export
    # ========================================================================

    def export_instances(
        self,
        template_id: str,
        actor: ActorContext,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """CSV of the template's instances in the period; needs `exportData`."""
        now = resolve_now(now)
        output = StringIO()
        writer = csv.writer(output)
        writer.writerow(EXPORT_COLUMNS)

        with Session(self.engine) as session:
            self._template(session, actor, template_id, "exportData")
            instances = self._instances(session, [template_id], start, end)
            for instance in instances:
                steps = load_steps(session, instance.id)
                duration = (
                    round(hours(instance.started_at, instance.completed_at), 2)
                    if instance.completed_at else ""
                )
                writer.writerow([
                    instance.id,
                    instance.template_id,
                    instance.template_version,
                    instance.subject_ref,
                    instance.initiator_id,
                    instance.status,
                    instance.started_at.isoformat(),
                    instance.completed_at.isoformat() if instance.completed_at else "",
                    duration,
                    len(steps),
                    sum(1 for s in steps if s.status == StepStatus.completed.value),
                    sum(1 for s in steps if is_task(s) and is_late(s, instance, now)),
                ])

        logger.info(
            "Workflow instances exported",
            extra={"template_id": template_id, "actor_id": actor.id, "count": len(instances)},
        )
        return output.getvalue()
