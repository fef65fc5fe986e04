"""
Permission Evaluator
Prioritized, condition-scoped permission grants per workflow template.

Merge rule: for each permission key, the highest-priority grant that defines
the key decides it. Grants at the same priority that disagree on a key
resolve to False. Keys no matching grant defines are False.
"""

from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import Engine
from sqlmodel import Session, select

from ..config import settings
from ..converters import dumps, grant_to_dto, grant_permissions, grant_conditions
from ..errors import (
    NotAuthorizedError,
    PermissionNotFoundError,
    TemplateNotFoundError,
    ValidationError,
)
from ..logging_config import get_logger
from ..models import (
    ActorContext,
    EntityType,
    PERMISSION_KEYS,
    PermissionConditions,
    PermissionContext,
    PermissionGrantTable,
    PermissionGrantCreateDTO,
    PermissionGrantUpdateDTO,
    PermissionGrantDTO,
    EffectivePermissionsDTO,
    TemplateTable,
)
from ..util import new_id, resolve_now

logger = get_logger(__name__)

# user > role > department when priorities tie
SPECIFICITY = {EntityType.user.value: 0, EntityType.role.value: 1, EntityType.department.value: 2}

_MISSING = object()


def is_admin(actor: ActorContext) -> bool:
    return actor.role in settings.admin_roles_list


def conditions_match(conditions: Optional[PermissionConditions], context: PermissionContext) -> bool:
    """
    Each listed condition must hold for the context fields that are present.
    Once the context carries metadata, a missing key is a mismatch.
    """
    if conditions is None:
        return True
    if conditions.file_types and context.file_type is not None:
        if context.file_type not in conditions.file_types:
            return False
    if conditions.departments and context.department is not None:
        if context.department not in conditions.departments:
            return False
    if conditions.metadata and context.metadata is not None:
        for key, expected in conditions.metadata.items():
            if context.metadata.get(key, _MISSING) != expected:
                return False
    return True


def merge_grants(grants: List[PermissionGrantTable]) -> Dict[str, bool]:
    """Per-key highest-priority-defined wins; ties that disagree deny."""
    ordered = sorted(
        grants,
        key=lambda g: (-g.priority, SPECIFICITY.get(g.entity_type, 99), g.created_at, g.id),
    )
    result: Dict[str, bool] = {}
    for key in PERMISSION_KEYS:
        decided_priority = None
        values = []
        for grant in ordered:
            if decided_priority is not None and grant.priority != decided_priority:
                break
            perms = grant_permissions(grant)
            if key in perms:
                decided_priority = grant.priority
                values.append(bool(perms[key]))
        result[key] = bool(values) and all(values)
    return result


class PermissionEvaluator:
    """Resolves effective permissions and manages grants"""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ========================================================================
    # Evaluation
    # ========================================================================

    def matching_grants(
        self,
        session: Session,
        actor: ActorContext,
        template_id: str,
        context: Optional[PermissionContext] = None,
    ) -> List[PermissionGrantTable]:
        context = context or PermissionContext()
        rows = session.exec(
            select(PermissionGrantTable).where(PermissionGrantTable.template_id == template_id)
        ).all()
        identity = {
            EntityType.user.value: actor.id,
            EntityType.role.value: actor.role,
            EntityType.department.value: actor.department_id,
        }
        return [
            g for g in rows
            if identity.get(g.entity_type) is not None
            and g.entity_id == identity[g.entity_type]
            and conditions_match(grant_conditions(g), context)
        ]

    def effective_in_session(
        self,
        session: Session,
        actor: ActorContext,
        template_id: str,
        context: Optional[PermissionContext] = None,
    ) -> Dict[str, bool]:
        if is_admin(actor):
            return {key: True for key in PERMISSION_KEYS}
        return merge_grants(self.matching_grants(session, actor, template_id, context))

    def effective_permissions(
        self,
        actor: ActorContext,
        template_id: str,
        context: Optional[PermissionContext] = None,
    ) -> EffectivePermissionsDTO:
        with Session(self.engine) as session:
            if not session.get(TemplateTable, template_id):
                raise TemplateNotFoundError(template_id)
            permissions = self.effective_in_session(session, actor, template_id, context)
        return EffectivePermissionsDTO(template_id=template_id, actor_id=actor.id, permissions=permissions)

    def check(
        self,
        session: Session,
        actor: ActorContext,
        template_id: str,
        permission: str,
        context: Optional[PermissionContext] = None,
    ) -> bool:
        return self.effective_in_session(session, actor, template_id, context).get(permission, False)

    def require(
        self,
        session: Session,
        actor: ActorContext,
        template_id: str,
        permission: str,
        context: Optional[PermissionContext] = None,
    ) -> None:
        if not self.check(session, actor, template_id, permission, context):
            logger.info(
                f"Permission '{permission}' denied",
                extra={"actor_id": actor.id, "template_id": template_id, "action": permission},
            )
            raise NotAuthorizedError(
                f"Missing permission '{permission}' on template {template_id}",
                details={"permission": permission, "templateId": template_id, "actorId": actor.id},
            )

    def templates_with(self, session: Session, actor: ActorContext, permission: str) -> Optional[Set[str]]:
        """
        Ids of templates on which the actor holds `permission` outside any
        document context. None means every template (administrators).
        """
        if is_admin(actor):
            return None
        template_ids = session.exec(select(TemplateTable.id)).all()
        return {t for t in template_ids if self.check(session, actor, t, permission)}

    # ========================================================================
    # Grant management
    # ========================================================================

    def _require_template(self, session: Session, template_id: str) -> TemplateTable:
        template = session.get(TemplateTable, template_id)
        if not template:
            raise TemplateNotFoundError(template_id)
        return template

    def _validate_keys(self, permissions: Dict[str, bool]) -> None:
        unknown = sorted(k for k in permissions if k not in PERMISSION_KEYS)
        if unknown:
            raise ValidationError(
                "Unknown permission keys",
                problems=[f"unknown permission '{k}'" for k in unknown],
            )

    def list_for_template(self, template_id: str) -> List[PermissionGrantDTO]:
        with Session(self.engine) as session:
            self._require_template(session, template_id)
            rows = session.exec(
                select(PermissionGrantTable).where(PermissionGrantTable.template_id == template_id)
            ).all()
            rows = sorted(rows, key=lambda g: (-g.priority, SPECIFICITY.get(g.entity_type, 99), g.created_at, g.id))
            return [grant_to_dto(g) for g in rows]

    def create_grant(
        self,
        data: PermissionGrantCreateDTO,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> PermissionGrantDTO:
        self._validate_keys(data.permissions)
        with Session(self.engine) as session:
            self._require_template(session, data.template_id)
            self.require(session, actor, data.template_id, "manage")
            row = PermissionGrantTable(
                id=new_id("perm_"),
                template_id=data.template_id,
                entity_type=data.entity_type.value,
                entity_id=data.entity_id,
                permissions=dumps(data.permissions),
                priority=data.priority,
                conditions=dumps(data.conditions) if data.conditions else None,
                created_by=actor.id,
                created_at=resolve_now(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Permission grant created", extra={"template_id": row.template_id, "actor_id": actor.id})
            return grant_to_dto(row)

    def update_grant(
        self,
        grant_id: str,
        data: PermissionGrantUpdateDTO,
        actor: ActorContext,
    ) -> PermissionGrantDTO:
        with Session(self.engine) as session:
            row = session.get(PermissionGrantTable, grant_id)
            if not row:
                raise PermissionNotFoundError(grant_id)
            self.require(session, actor, row.template_id, "manage")

            if data.permissions is not None:
                self._validate_keys(data.permissions)
                row.permissions = dumps(data.permissions)
            if data.entity_type is not None:
                row.entity_type = data.entity_type.value
            if data.entity_id is not None:
                row.entity_id = data.entity_id
            if data.priority is not None:
                row.priority = data.priority
            if "conditions" in data.model_fields_set:
                row.conditions = dumps(data.conditions) if data.conditions else None

            session.add(row)
            session.commit()
            session.refresh(row)
            return grant_to_dto(row)

    def delete_grant(self, grant_id: str, actor: ActorContext) -> None:
        with Session(self.engine) as session:
            row = session.get(PermissionGrantTable, grant_id)
            if not row:
                raise PermissionNotFoundError(grant_id)
            self.require(session, actor, row.template_id, "manage")
            session.delete(row)
            session.commit()

    def copy_permissions(
        self,
        source_template_id: str,
        target_template_id: str,
        actor: ActorContext,
        now: Optional[datetime] = None,
    ) -> List[PermissionGrantDTO]:
        """Duplicate every grant of the source template onto the target."""
        now = resolve_now(now)
        with Session(self.engine) as session:
            self._require_template(session, source_template_id)
            self._require_template(session, target_template_id)
            self.require(session, actor, target_template_id, "manage")

            sources = session.exec(
                select(PermissionGrantTable).where(PermissionGrantTable.template_id == source_template_id)
            ).all()
            copies = []
            for grant in sorted(sources, key=lambda g: (g.created_at, g.id)):
                copy = PermissionGrantTable(
                    id=new_id("perm_"),
                    template_id=target_template_id,
                    entity_type=grant.entity_type,
                    entity_id=grant.entity_id,
                    permissions=grant.permissions,
                    priority=grant.priority,
                    conditions=grant.conditions,
                    created_by=actor.id,
                    created_at=now,
                )
                session.add(copy)
                copies.append(copy)
            session.commit()
            for copy in copies:
                session.refresh(copy)
            logger.info(
                f"Copied {len(copies)} grants from {source_template_id}",
                extra={"template_id": target_template_id, "count": len(copies)},
            )
            return [grant_to_dto(c) for c in copies]
