"""Workflow engine: templates, instances, assignment, SLA, permissions, notifications, metrics."""
from .assignment import AssignmentStrategy, register_strategy, resolve
from .events import WorkflowSubject, build_event_bus
from .instances import InstanceEngine
from .metrics import WorkflowMetrics
from .notifications import NotificationCenter
from .permissions import PermissionEvaluator
from .sla import SLAMonitor
from .templates import TemplateStore, validate_steps

__all__ = [
    "AssignmentStrategy",
    "register_strategy",
    "resolve",
    "WorkflowSubject",
    "build_event_bus",
    "InstanceEngine",
    "NotificationCenter",
    "PermissionEvaluator",
    "SLAMonitor",
    "WorkflowMetrics",
    "TemplateStore",
    "validate_steps",
]
