"""
Data Models
Relational tables (SQLModel) and the API DTOs exchanged with the dashboard.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field as PydField, field_validator, model_validator
from pydantic.alias_generators import to_camel
from sqlmodel import SQLModel, Field

from .util.time import utc_now


# ============================================================================
# ENUMS
# ============================================================================

class StepType(str, Enum):
    APPROVAL = "APPROVAL"
    REVIEW = "REVIEW"
    NOTIFICATION = "NOTIFICATION"
    TASK = "TASK"
    SIGN = "SIGN"
    ROUTE = "ROUTE"
    CONDITION = "CONDITION"
    ACTION = "ACTION"


# Steps the engine finishes on its own at activation time
AUTO_STEP_TYPES = (StepType.NOTIFICATION, StepType.CONDITION)


class AssignmentKind(str, Enum):
    user = "user"
    role = "role"
    department = "department"
    dynamic = "dynamic"


class DeadlineType(str, Enum):
    fixed = "fixed"
    dynamic = "dynamic"


class InstanceStatus(str, Enum):
    active = "active"
    completed = "completed"
    rejected = "rejected"
    cancelled = "cancelled"


class StepStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    rejected = "rejected"
    skipped = "skipped"


TERMINAL_STEP_STATUSES = (StepStatus.completed, StepStatus.rejected, StepStatus.skipped)


class StepAction(str, Enum):
    approve = "approve"
    reject = "reject"
    review = "review"
    sign = "sign"
    complete = "complete"


COMPLETING_ACTIONS = (StepAction.approve, StepAction.review, StepAction.sign, StepAction.complete)


class EntityType(str, Enum):
    user = "user"
    role = "role"
    department = "department"


PERMISSION_KEYS = (
    "view", "edit", "delete", "manage", "start",
    "assign", "reassign", "cancel", "viewMetrics", "exportData",
)


class NotificationType(str, Enum):
    task_assigned = "task_assigned"
    task_completed = "task_completed"
    task_reassigned = "task_reassigned"
    workflow_started = "workflow_started"
    workflow_completed = "workflow_completed"
    workflow_rejected = "workflow_rejected"
    workflow_cancelled = "workflow_cancelled"
    sla_warning = "sla_warning"
    sla_breach = "sla_breach"


class NotificationPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    urgent = "urgent"


class SLALevel(str, Enum):
    at_risk = "at_risk"
    breached = "breached"


SLA_LEVEL_RANK = {None: 0, SLALevel.at_risk.value: 1, SLALevel.breached.value: 2}


# ============================================================================
# DATABASE MODELS
# ============================================================================
# Structured fields are stored as JSON text and decoded in converters.py.

class UserTable(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    role: str = Field(default="user", index=True)
    department_id: Optional[str] = Field(default=None, index=True)
    manager_id: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class DepartmentTable(SQLModel, table=True):
    __tablename__ = "departments"

    id: str = Field(primary_key=True)
    name: str
    code: str = Field(index=True, unique=True)
    head_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class DocumentTable(SQLModel, table=True):
    """Subject entity a workflow instance runs against."""
    __tablename__ = "documents"

    id: str = Field(primary_key=True)
    title: str
    file_type: str = Field(index=True)
    owner_id: str = Field(index=True)
    department_id: Optional[str] = Field(default=None, index=True)
    meta: str = "{}"  # JSON object
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TemplateTable(SQLModel, table=True):
    __tablename__ = "workflow_templates"

    id: str = Field(primary_key=True)
    name: str
    description: str = ""
    department: str = Field(index=True)
    file_types: str = "[]"  # JSON list
    steps: str = "[]"  # JSON list of StepSpec
    sla: str = "{}"  # JSON SLAConfig
    active: bool = True
    created_by: str
    version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InstanceTable(SQLModel, table=True):
    __tablename__ = "workflow_instances"

    id: str = Field(primary_key=True)
    template_id: str = Field(foreign_key="workflow_templates.id", index=True)
    template_version: int = 1
    subject_ref: str = Field(index=True)
    initiator_id: str
    status: str = Field(default=InstanceStatus.active.value, index=True)
    current_step_index: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    variables: str = "{}"
    # StepSpecs and SLA config frozen at start; template edits never reach running instances
    steps_snapshot: str = "[]"
    sla_snapshot: str = "{}"
    lock_version: int = 0


class StepStateTable(SQLModel, table=True):
    __tablename__ = "workflow_step_states"

    id: str = Field(primary_key=True)
    instance_id: str = Field(foreign_key="workflow_instances.id", index=True)
    step_key: str
    position: int
    name: str
    type: str
    status: str = Field(default=StepStatus.pending.value, index=True)
    assignees: str = "[]"
    deadline: Optional[datetime] = Field(default=None, index=True)
    decisions: str = "[]"
    form_data: str = "{}"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    # SLA watermark: highest level already notified
    last_notified_level: Optional[str] = None
    last_notified_at: Optional[datetime] = None
    escalated: bool = False
    reassignments: str = "[]"


class PermissionGrantTable(SQLModel, table=True):
    __tablename__ = "workflow_permissions"

    id: str = Field(primary_key=True)
    template_id: str = Field(foreign_key="workflow_templates.id", index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    permissions: str = "{}"
    priority: int = 0
    conditions: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class NotificationTable(SQLModel, table=True):
    __tablename__ = "workflow_notifications"

    id: str = Field(primary_key=True)
    recipient_id: str = Field(index=True)
    instance_id: Optional[str] = Field(default=None, index=True)
    step_id: Optional[str] = None
    type: str = Field(index=True)
    priority: str = NotificationPriority.medium.value
    title: str
    message: str = ""
    read: bool = Field(default=False, index=True)
    read_at: Optional[datetime] = None
    action_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class WorkflowEventTable(SQLModel, table=True):
    """Append-only audit trail of engine transitions."""
    __tablename__ = "workflow_events"

    id: str = Field(primary_key=True)
    instance_id: str = Field(index=True)
    # per-instance ordering; events of one transaction share created_at
    seq: int = 0
    step_id: Optional[str] = None
    event_type: str
    actor_id: Optional[str] = None
    data: str = "{}"
    created_at: datetime = Field(default_factory=utc_now)


class SchedulerLeaseTable(SQLModel, table=True):
    __tablename__ = "scheduler_leases"

    name: str = Field(primary_key=True)
    holder: str
    expires_at: datetime


# ============================================================================
# PYDANTIC MODELS (API DTOs)
# ============================================================================

class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActorContext(BaseModel):
    """Authenticated caller, loaded from the user table"""
    id: str
    name: str = ""
    role: str = "user"
    department_id: Optional[str] = None


# --- Directory ---

class UserCreateDTO(ApiModel):
    name: str
    email: str
    role: str = "user"
    department_id: Optional[str] = None
    manager_id: Optional[str] = None


class UserUpdateDTO(ApiModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    active: Optional[bool] = None


class UserDTO(ApiModel):
    id: str
    name: str
    email: str
    role: str
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    active: bool
    created_at: datetime


class DepartmentCreateDTO(ApiModel):
    name: str
    code: str
    head_id: Optional[str] = None


class DepartmentUpdateDTO(ApiModel):
    name: Optional[str] = None
    code: Optional[str] = None
    head_id: Optional[str] = None


class DepartmentDTO(ApiModel):
    id: str
    name: str
    code: str
    head_id: Optional[str] = None
    created_at: datetime


class DocumentCreateDTO(ApiModel):
    title: str
    file_type: str
    owner_id: Optional[str] = None  # defaults to the caller
    department_id: Optional[str] = None
    metadata: Dict[str, Any] = PydField(default_factory=dict)


class DocumentUpdateDTO(ApiModel):
    title: Optional[str] = None
    file_type: Optional[str] = None
    department_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DocumentDTO(ApiModel):
    id: str
    title: str
    file_type: str
    owner_id: str
    department_id: Optional[str] = None
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


# --- Templates ---

class AssignmentRule(ApiModel):
    kind: AssignmentKind
    value: Union[str, List[str]] = PydField(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_type_key(cls, data: Any) -> Any:
        # dashboard payloads use {"type": ..., "value": ...}
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = {**data, "kind": data["type"]}
            data.pop("type")
        return data

    def values(self) -> List[str]:
        if isinstance(self.value, str):
            return [self.value] if self.value else []
        return [v for v in self.value if v]


class DeadlineSpec(ApiModel):
    type: DeadlineType = DeadlineType.fixed
    hours: Optional[float] = None
    formula: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_value_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "hours" not in data and "value" in data:
            data = {**data, "hours": data["value"]}
            data.pop("value")
        return data


class StepCondition(ApiModel):
    field: str
    operator: str = "eq"
    value: Any = None


class StepSpec(ApiModel):
    id: str
    name: str
    type: StepType
    description: str = ""
    assign_to: Optional[AssignmentRule] = None
    deadline: Optional[DeadlineSpec] = None
    parallel: bool = False
    required_approvals: Optional[int] = None
    dependencies: List[str] = PydField(default_factory=list)
    conditions: List[StepCondition] = PydField(default_factory=list)
    form_schema: Optional[Dict[str, Any]] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"NOTIFY": "NOTIFICATION"}.get(v.upper(), v.upper())
        return v


class SLAConfig(ApiModel):
    warning_threshold_hours: float = PydField(default=2.0, ge=0)
    auto_reassign: bool = False
    # step type -> backup user ids
    backup_assignees: Dict[str, List[str]] = PydField(default_factory=dict)


class TemplateCreateDTO(ApiModel):
    name: str
    description: str = ""
    department: str
    file_types: List[str] = PydField(default_factory=list)
    steps: List[StepSpec]
    sla: SLAConfig = PydField(default_factory=SLAConfig)
    active: bool = True


class TemplateUpdateDTO(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None
    file_types: Optional[List[str]] = None
    steps: Optional[List[StepSpec]] = None
    sla: Optional[SLAConfig] = None
    active: Optional[bool] = None


class TemplateDTO(ApiModel):
    id: str
    name: str
    description: str
    department: str
    file_types: List[str]
    steps: List[StepSpec]
    sla: SLAConfig
    active: bool
    created_by: str
    version: int
    created_at: datetime
    updated_at: datetime


# --- Instances ---

class Decision(ApiModel):
    user_id: str
    action: StepAction
    remarks: Optional[str] = None
    timestamp: datetime


class ReassignmentEntry(ApiModel):
    previous_assignees: List[str]
    new_assignees: List[str]
    reason: str = ""
    by: Optional[str] = None
    at: datetime
    automatic: bool = False


class StepStateDTO(ApiModel):
    id: str
    instance_id: str
    step_key: str
    position: int
    name: str
    type: StepType
    status: StepStatus
    assignees: List[str]
    deadline: Optional[datetime] = None
    decisions: List[Decision]
    form_data: Dict[str, Any]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_notified_level: Optional[SLALevel] = None
    escalated: bool = False
    reassignments: List[ReassignmentEntry] = PydField(default_factory=list)


class InstanceDTO(ApiModel):
    id: str
    template_id: str
    template_version: int
    subject_ref: str
    initiator_id: str
    status: InstanceStatus
    current_step_index: int
    started_at: datetime
    completed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    variables: Dict[str, Any]
    steps: List[StepStateDTO]
    lock_version: int = 0


class StartInstanceDTO(ApiModel):
    template_id: str
    subject_ref: str
    variables: Dict[str, Any] = PydField(default_factory=dict)


class StepActionDTO(ApiModel):
    action: StepAction
    remarks: Optional[str] = None
    form_data: Dict[str, Any] = PydField(default_factory=dict)
    # lockVersion the client last saw; stale values are rejected with 409
    lock_version: Optional[int] = None


class CancelInstanceDTO(ApiModel):
    reason: str = ""
    lock_version: Optional[int] = None


class TaskDTO(ApiModel):
    """In-progress step assigned to the caller"""
    instance_id: str
    template_id: str
    subject_ref: str
    step: StepStateDTO


class WorkflowEventDTO(ApiModel):
    id: str
    instance_id: str
    seq: int
    step_id: Optional[str] = None
    event_type: str
    actor_id: Optional[str] = None
    data: Dict[str, Any]
    created_at: datetime


# --- Permissions ---

class PermissionConditions(ApiModel):
    file_types: Optional[List[str]] = None
    departments: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class PermissionGrantCreateDTO(ApiModel):
    template_id: str
    entity_type: EntityType
    entity_id: str
    permissions: Dict[str, bool]
    priority: int = 0
    conditions: Optional[PermissionConditions] = None


class PermissionGrantUpdateDTO(ApiModel):
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None
    priority: Optional[int] = None
    conditions: Optional[PermissionConditions] = None


class PermissionGrantDTO(ApiModel):
    id: str
    template_id: str
    entity_type: EntityType
    entity_id: str
    permissions: Dict[str, bool]
    priority: int
    conditions: Optional[PermissionConditions] = None
    created_by: Optional[str] = None
    created_at: datetime


class CopyPermissionsDTO(ApiModel):
    source_template_id: str
    target_template_id: str


class PermissionContext(ApiModel):
    """Facts grant conditions are matched against"""
    file_type: Optional[str] = None
    department: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class EffectivePermissionsDTO(ApiModel):
    template_id: str
    actor_id: str
    permissions: Dict[str, bool]


# --- SLA ---

class ReassignDTO(ApiModel):
    assign_to: List[str]
    reason: str = ""


class SLAScanResult(ApiModel):
    at_risk: List[StepStateDTO]
    breached: List[StepStateDTO]


class SLAStatsDTO(ApiModel):
    active_steps: int
    on_track: int
    at_risk: int
    breached: int
    without_deadline: int
    breach_rate: float


class SLACheckSummary(ApiModel):
    ran: bool
    at_risk: int = 0
    breached: int = 0
    warnings_sent: int = 0
    escalated: int = 0
    reassigned: int = 0


class AddAssigneesDTO(ApiModel):
    user_ids: List[str]
    reason: str = ""


# --- Metrics ---

class TemplatePerformanceDTO(ApiModel):
    template_id: str
    total_workflows: int
    completed_workflows: int
    rejected_workflows: int
    cancelled_workflows: int
    active_workflows: int
    completion_rate: float  # percent of started instances
    average_duration_hours: float
    sla_breaches: int


class SLAPerformanceDTO(ApiModel):
    template_id: str
    steps_with_deadline: int
    late_steps: int
    compliance_rate: float  # percent on time
    warnings: int
    breaches: int
    breaches_by_step: Dict[str, int]


class DepartmentPerformanceDTO(ApiModel):
    department: str
    total_tasks: int
    completed_tasks: int
    late_tasks: int
    average_task_hours: float


class UserPerformanceDTO(ApiModel):
    user_id: str
    assigned_tasks: int
    decided_tasks: int
    late_tasks: int
    average_response_hours: float


class DashboardOverview(ApiModel):
    total_workflows: int
    completed_workflows: int
    active_workflows: int
    rejected_workflows: int
    cancelled_workflows: int
    total_tasks: int
    completed_tasks: int


class DashboardSLA(ApiModel):
    warnings: int
    breaches: int
    breaches_by_template: Dict[str, int]
    breaches_by_department: Dict[str, int]


class DashboardPerformance(ApiModel):
    average_workflow_hours: float
    average_task_hours: float
    completion_rate_by_template: Dict[str, float]


class DashboardMetricsDTO(ApiModel):
    overview: DashboardOverview
    sla_compliance: DashboardSLA
    performance: DashboardPerformance


# --- Notifications ---

class NotificationDTO(ApiModel):
    id: str
    recipient_id: str
    instance_id: Optional[str] = None
    step_id: Optional[str] = None
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    read: bool
    read_at: Optional[datetime] = None
    action_url: Optional[str] = None
    created_at: datetime


class NotificationPage(ApiModel):
    items: List[NotificationDTO]
    total: int
    limit: int
    offset: int
