"""
Template Store
Persistence and validation of workflow templates.
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Engine, delete
from sqlmodel import Session, select

from ..converters import dumps, template_to_dto
from ..errors import ConflictError, NotAuthorizedError, TemplateNotFoundError, ValidationError
from ..logging_config import get_logger
from ..models import (
    ActorContext,
    AssignmentKind,
    DeadlineType,
    InstanceTable,
    PermissionGrantTable,
    StepSpec,
    StepType,
    TemplateTable,
    TemplateCreateDTO,
    TemplateUpdateDTO,
    TemplateDTO,
)
from ..util import new_id, resolve_now
from .assignment import is_known_strategy
from .permissions import PermissionEvaluator, is_admin

logger = get_logger(__name__)


def _find_cycle(steps: List[StepSpec]) -> Optional[List[str]]:
    """Depth-first search over dependencies; returns one cycle path if any."""
    graph: Dict[str, List[str]] = {s.id: list(s.dependencies) for s in steps}
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node: WHITE for node in graph}
    stack: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        colour[node] = GREY
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in colour:
                continue
            if colour[dep] == GREY:
                return stack[stack.index(dep):] + [dep]
            if colour[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        colour[node] = BLACK
        return None

    for node in graph:
        if colour[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def validate_steps(steps: List[StepSpec]) -> List[str]:
    """Collect every problem in a step list (empty list means valid)."""
    problems: List[str] = []
    if not steps:
        return ["template must have at least one step"]

    seen = set()
    for step in steps:
        if step.id in seen:
            problems.append(f"duplicate step id '{step.id}'")
        seen.add(step.id)

    for step in steps:
        label = f"step '{step.id}'"
        if not step.name.strip():
            problems.append(f"{label}: name is required")

        if step.type != StepType.CONDITION:
            if step.assign_to is None or not step.assign_to.values():
                problems.append(f"{label}: assignment value is required")
            elif step.assign_to.kind == AssignmentKind.dynamic:
                for value in step.assign_to.values():
                    if not is_known_strategy(value):
                        problems.append(f"{label}: unknown assignment strategy '{value}'")

        if step.deadline is not None:
            if step.deadline.type == DeadlineType.fixed:
                if step.deadline.hours is None or step.deadline.hours <= 0:
                    problems.append(f"{label}: fixed deadline hours must be > 0")
            elif not step.deadline.formula:
                problems.append(f"{label}: dynamic deadline needs a formula")

        if step.required_approvals is not None and step.required_approvals < 1:
            problems.append(f"{label}: requiredApprovals must be >= 1")

        for dep in step.dependencies:
            if dep == step.id:
                problems.append(f"{label}: cannot depend on itself")
            elif dep not in seen:
                problems.append(f"{label}: unknown dependency '{dep}'")

    cycle = _find_cycle(steps)
    if cycle and len(cycle) > 2:
        problems.append("dependency cycle: " + " -> ".join(cycle))
    return problems


def ensure_valid(steps: List[StepSpec]) -> None:
    problems = validate_steps(steps)
    if problems:
        raise ValidationError("Invalid workflow template", problems=problems)


class TemplateStore:
    """CRUD for workflow templates"""

    def __init__(self, engine: Engine, permissions: PermissionEvaluator):
        self.engine = engine
        self.permissions = permissions

    def _get_row(self, session: Session, template_id: str) -> TemplateTable:
        row = session.get(TemplateTable, template_id)
        if not row:
            raise TemplateNotFoundError(template_id)
        return row

    def create_template(
        self,
        data: TemplateCreateDTO,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> TemplateDTO:
        if not is_admin(actor):
            raise NotAuthorizedError(
                "Only administrators can create workflow templates",
                details={"actorId": actor.id, "role": actor.role},
            )
        ensure_valid(data.steps)
        now = resolve_now(now)

        row = TemplateTable(
            id=new_id("tpl_"),
            name=data.name,
            description=data.description,
            department=data.department,
            file_types=dumps(data.file_types),
            steps=dumps(data.steps),
            sla=dumps(data.sla),
            active=data.active,
            created_by=actor.id,
            version=1,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(f"Template '{row.name}' created", extra={"template_id": row.id, "actor_id": actor.id})
            return template_to_dto(row)

    def list_templates(
        self,
        active: Optional[bool] = None,
        department: Optional[str] = None,
    ) -> List[TemplateDTO]:
        with Session(self.engine) as session:
            stmt = select(TemplateTable)
            if active is not None:
                stmt = stmt.where(TemplateTable.active == active)
            if department:
                stmt = stmt.where(TemplateTable.department == department)
            rows = session.exec(stmt.order_by(TemplateTable.created_at.desc(), TemplateTable.id)).all()
            return [template_to_dto(r) for r in rows]

    def get_template(self, template_id: str) -> TemplateDTO:
        with Session(self.engine) as session:
            return template_to_dto(self._get_row(session, template_id))

    def update_template(
        self,
        template_id: str,
        data: TemplateUpdateDTO,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> TemplateDTO:
        """Running instances keep the step list they were started with."""
        with Session(self.engine) as session:
            row = self._get_row(session, template_id)
            self.permissions.require(session, actor, template_id, "edit")

            if data.steps is not None:
                ensure_valid(data.steps)
                row.steps = dumps(data.steps)
            if data.name is not None:
                row.name = data.name
            if data.description is not None:
                row.description = data.description
            if data.department is not None:
                row.department = data.department
            if data.file_types is not None:
                row.file_types = dumps(data.file_types)
            if data.sla is not None:
                row.sla = dumps(data.sla)
            if data.active is not None:
                row.active = data.active

            row.version += 1
            row.updated_at = resolve_now(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                f"Template updated to version {row.version}",
                extra={"template_id": row.id, "actor_id": actor.id},
            )
            return template_to_dto(row)

    def delete_template(self, template_id: str, actor: ActorContext) -> None:
        with Session(self.engine) as session:
            row = self._get_row(session, template_id)
            self.permissions.require(session, actor, template_id, "delete")

            in_use = session.exec(
                select(InstanceTable.id).where(InstanceTable.template_id == template_id).limit(1)
            ).first()
            if in_use:
                raise ConflictError(
                    "Template is referenced by workflow instances",
                    details={"id": template_id, "instanceId": in_use},
                )

            session.execute(delete(PermissionGrantTable).where(PermissionGrantTable.template_id == template_id))
            session.delete(row)
            session.commit()
            logger.info("Template deleted", extra={"template_id": template_id, "actor_id": actor.id})
