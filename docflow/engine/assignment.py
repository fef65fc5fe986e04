"""
Strategy Pattern: Assignment resolution.

Turns a step's assignment rule into concrete user ids at activation time.
Roster lookups always hit the directory tables, so membership changes made
after a template was authored are picked up by the next activation.

Dynamic rules name a strategy registered in STRATEGIES. Deployments add their
own with `register_strategy`.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlmodel import Session, select

from ..errors import ValidationError
from ..logging_config import get_logger
from ..models import AssignmentKind, AssignmentRule, UserTable, DepartmentTable, DocumentTable

logger = get_logger(__name__)


class AssignmentContext:
    """What a resolver may look at: roster session, subject document, initiator and variables."""

    def __init__(
        self,
        session: Session,
        initiator_id: str,
        document: Optional[DocumentTable] = None,
        variables: Optional[Dict[str, Any]] = None,
    ):
        self.session = session
        self.initiator_id = initiator_id
        self.document = document
        self.variables = variables or {}

    def get_user(self, user_id: Optional[str]) -> Optional[UserTable]:
        if not user_id:
            return None
        return self.session.get(UserTable, user_id)


class AssignmentStrategy(ABC):
    """Interface for dynamic assignment strategies."""

    name: str = ""

    @abstractmethod
    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        """
        Args:
            context: activation context
            argument: optional text after the strategy name ("strategy:argument")

        Returns:
            user ids, possibly empty
        """
        pass


class InitiatorStrategy(AssignmentStrategy):
    name = "initiator"

    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        return [context.initiator_id]


class SubjectOwnerStrategy(AssignmentStrategy):
    name = "subject_owner"

    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        if context.document is None:
            return []
        return [context.document.owner_id]


class OwnerManagerStrategy(AssignmentStrategy):
    """Manager of the document owner (falls back to the initiator's manager)."""
    name = "owner_manager"

    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        owner_id = context.document.owner_id if context.document else context.initiator_id
        owner = context.get_user(owner_id)
        if owner and owner.manager_id:
            return [owner.manager_id]
        return []


class DepartmentHeadStrategy(AssignmentStrategy):
    """Head of the document's department, or of the department given as argument."""
    name = "department_head"

    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        department_id = argument or (context.document.department_id if context.document else None)
        if not department_id:
            initiator = context.get_user(context.initiator_id)
            department_id = initiator.department_id if initiator else None
        if not department_id:
            return []
        department = context.session.get(DepartmentTable, department_id)
        if department and department.head_id:
            return [department.head_id]
        return []


class VariableStrategy(AssignmentStrategy):
    """User id(s) supplied in the instance variables, e.g. "variable:reviewer"."""
    name = "variable"

    def resolve(self, context: AssignmentContext, argument: Optional[str] = None) -> List[str]:
        if not argument:
            return []
        value = context.variables.get(argument)
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [v for v in value if isinstance(v, str)]
        return []


STRATEGIES: Dict[str, AssignmentStrategy] = {}


def register_strategy(strategy: AssignmentStrategy) -> None:
    """Register (or replace) a dynamic strategy under its name."""
    if not strategy.name:
        raise ValueError("Assignment strategy needs a name")
    STRATEGIES[strategy.name] = strategy


def unregister_strategy(name: str) -> None:
    STRATEGIES.pop(name, None)


for _builtin in (
    InitiatorStrategy(),
    SubjectOwnerStrategy(),
    OwnerManagerStrategy(),
    DepartmentHeadStrategy(),
    VariableStrategy(),
):
    register_strategy(_builtin)


def split_dynamic(value: str):
    """ "department_head:dep_1" -> ("department_head", "dep_1") """
    name, _, argument = value.partition(":")
    return name.strip(), (argument.strip() or None)


def is_known_strategy(value: str) -> bool:
    return split_dynamic(value)[0] in STRATEGIES


def _dedupe(user_ids: List[str]) -> List[str]:
    seen = set()
    result = []
    for uid in user_ids:
        if uid and uid not in seen:
            seen.add(uid)
            result.append(uid)
    return result


def resolve(rule: Optional[AssignmentRule], context: AssignmentContext) -> List[str]:
    """
    Resolve an assignment rule to user ids.

    user -> literal ids; role / department -> active members right now;
    dynamic -> registered strategy. Order is preserved, duplicates dropped.
    """
    if rule is None:
        return []

    values = rule.values()

    if rule.kind == AssignmentKind.user:
        return _dedupe(values)

    if rule.kind == AssignmentKind.role:
        if not values:
            return []
        rows = context.session.exec(
            select(UserTable)
            .where(UserTable.role.in_(values), UserTable.active == True)  # noqa: E712
            .order_by(UserTable.created_at, UserTable.id)
        ).all()
        return _dedupe([u.id for u in rows])

    if rule.kind == AssignmentKind.department:
        if not values:
            return []
        rows = context.session.exec(
            select(UserTable)
            .where(UserTable.department_id.in_(values), UserTable.active == True)  # noqa: E712
            .order_by(UserTable.created_at, UserTable.id)
        ).all()
        return _dedupe([u.id for u in rows])

    resolved: List[str] = []
    for value in values:
        name, argument = split_dynamic(value)
        strategy = STRATEGIES.get(name)
        if strategy is None:
            raise ValidationError(
                f"Unknown assignment strategy '{name}'",
                details={"strategy": name, "known": sorted(STRATEGIES)},
            )
        resolved.extend(strategy.resolve(context, argument))
    return _dedupe(resolved)
