"""
Observer Pattern: workflow event fan-out.

Every engine transition is published as a WorkflowEvent. Observers run inside
the transaction that produced the event, so the audit row and notifications
commit or roll back together with the state change.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from ..converters import dumps
from ..logging_config import get_logger
from ..models import WorkflowEventTable, NotificationType, NotificationPriority
from ..util import new_id, resolve_now
from .notifications import NotificationCenter

logger = get_logger(__name__)


class EventType:
    INSTANCE_STARTED = "instance_started"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELLED = "instance_cancelled"
    STEP_ACTIVATED = "step_activated"
    STEP_NOTIFIED = "step_notified"
    STEP_DECISION = "step_decision"
    STEP_COMPLETED = "step_completed"
    STEP_REJECTED = "step_rejected"
    STEP_SKIPPED = "step_skipped"
    STEP_REASSIGNED = "step_reassigned"
    STEP_ASSIGNEES_ADDED = "step_assignees_added"
    SLA_WARNING = "sla_warning"
    SLA_BREACH = "sla_breach"


class WorkflowEvent:
    """Represents one engine transition."""

    def __init__(
        self,
        event_type: str,
        instance_id: str,
        data: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        self.event_type = event_type
        self.instance_id = instance_id
        self.step_id = step_id
        self.actor_id = actor_id
        self.data = data or {}
        self.timestamp = resolve_now(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "instance_id": self.instance_id,
            "step_id": self.step_id,
            "actor_id": self.actor_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class WorkflowObserver(ABC):
    """Base observer for workflow events."""

    @abstractmethod
    def update(self, event: WorkflowEvent, session: Session) -> None:
        pass


class AuditObserver(WorkflowObserver):
    """Appends every event to the workflow_events table."""

    def update(self, event: WorkflowEvent, session: Session) -> None:
        previous = session.exec(
            select(func.count()).select_from(WorkflowEventTable).where(WorkflowEventTable.instance_id == event.instance_id)
        ).one()
        session.add(WorkflowEventTable(
            id=new_id("evt_"),
            instance_id=event.instance_id,
            seq=previous + 1,
            step_id=event.step_id,
            event_type=event.event_type,
            actor_id=event.actor_id,
            data=dumps(event.data),
            created_at=event.timestamp,
        ))


class LogObserver(WorkflowObserver):
    """Writes a structured log line per event."""

    def update(self, event: WorkflowEvent, session: Session) -> None:
        logger.info(
            f"Workflow event {event.event_type}",
            extra={
                "instance_id": event.instance_id,
                "step_id": event.step_id,
                "actor_id": event.actor_id,
                "action": event.event_type,
            },
        )


class NotificationObserver(WorkflowObserver):
    """
    Turns events into inbox notifications.

    Recipients come from the event payload:
    - assignees: users holding the step
    - initiator_id: user who started the instance
    - escalate_to: extra recipients of an SLA breach
    - new_assignees / added: users a step was handed to
    """

    def __init__(self, center: NotificationCenter):
        self.center = center

    def update(self, event: WorkflowEvent, session: Session) -> None:
        handler = getattr(self, f"_on_{event.event_type}", None)
        if handler is None:
            return
        handler(event, session)

    def _send(
        self,
        session: Session,
        event: WorkflowEvent,
        recipients: List[str],
        type: NotificationType,
        title: str,
        message: str = "",
        priority: NotificationPriority = NotificationPriority.medium,
    ) -> None:
        self.center.create_many(
            session,
            recipients,
            type,
            title,
            message,
            priority=priority,
            instance_id=event.instance_id,
            step_id=event.step_id,
            now=event.timestamp,
        )

    def _initiator(self, event: WorkflowEvent) -> List[str]:
        initiator = event.data.get("initiator_id")
        return [initiator] if initiator else []

    def _on_instance_started(self, event: WorkflowEvent, session: Session) -> None:
        self._send(
            session, event, self._initiator(event), NotificationType.workflow_started,
            f"Workflow started: {event.data.get('template_name', '')}".strip(),
            priority=NotificationPriority.low,
        )

    def _on_step_activated(self, event: WorkflowEvent, session: Session) -> None:
        deadline = event.data.get("deadline")
        message = f"Due {deadline}" if deadline else ""
        self._send(
            session, event, event.data.get("assignees", []), NotificationType.task_assigned,
            f"New task: {event.data.get('step_name', '')}", message,
        )

    def _on_step_notified(self, event: WorkflowEvent, session: Session) -> None:
        self._send(
            session, event, event.data.get("assignees", []), NotificationType.task_assigned,
            f"For your information: {event.data.get('step_name', '')}",
            event.data.get("description", ""),
            priority=NotificationPriority.low,
        )

    def _on_step_completed(self, event: WorkflowEvent, session: Session) -> None:
        if event.data.get("automatic"):
            return
        self._send(
            session, event, self._initiator(event), NotificationType.task_completed,
            f"Step completed: {event.data.get('step_name', '')}",
            priority=NotificationPriority.low,
        )

    def _on_step_reassigned(self, event: WorkflowEvent, session: Session) -> None:
        self._send(
            session, event, event.data.get("new_assignees", []), NotificationType.task_reassigned,
            f"Task reassigned to you: {event.data.get('step_name', '')}",
            event.data.get("reason", ""),
            priority=NotificationPriority.high,
        )

    def _on_step_assignees_added(self, event: WorkflowEvent, session: Session) -> None:
        deadline = event.data.get("deadline")
        self._send(
            session, event, event.data.get("added", []), NotificationType.task_assigned,
            f"New task: {event.data.get('step_name', '')}",
            f"Due {deadline}" if deadline else event.data.get("reason", ""),
        )

    def _on_instance_completed(self, event: WorkflowEvent, session: Session) -> None:
        self._send(session, event, self._initiator(event), NotificationType.workflow_completed, "Workflow completed")

    def _on_instance_rejected(self, event: WorkflowEvent, session: Session) -> None:
        self._send(
            session, event, self._initiator(event), NotificationType.workflow_rejected,
            "Workflow rejected", event.data.get("remarks") or "",
            priority=NotificationPriority.high,
        )

    def _on_instance_cancelled(self, event: WorkflowEvent, session: Session) -> None:
        recipients = self._initiator(event) + list(event.data.get("assignees", []))
        recipients = [r for r in recipients if r != event.actor_id]
        self._send(
            session, event, recipients, NotificationType.workflow_cancelled,
            "Workflow cancelled", event.data.get("reason", ""),
        )

    def _on_sla_warning(self, event: WorkflowEvent, session: Session) -> None:
        self._send(
            session, event, event.data.get("assignees", []), NotificationType.sla_warning,
            f"Deadline approaching: {event.data.get('step_name', '')}",
            f"Due {event.data.get('deadline')}",
            priority=NotificationPriority.high,
        )

    def _on_sla_breach(self, event: WorkflowEvent, session: Session) -> None:
        recipients = list(event.data.get("assignees", [])) + list(event.data.get("escalate_to", []))
        self._send(
            session, event, recipients, NotificationType.sla_breach,
            f"Deadline missed: {event.data.get('step_name', '')}",
            f"Was due {event.data.get('deadline')}",
            priority=NotificationPriority.urgent,
        )


class WorkflowSubject:
    """Holds the observers and publishes events to them in order."""

    def __init__(self):
        self._observers: List[WorkflowObserver] = []

    def attach(self, observer: WorkflowObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def detach(self, observer: WorkflowObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def notify(self, event: WorkflowEvent, session: Session) -> None:
        for observer in self._observers:
            observer.update(event, session)

    def publish(
        self,
        session: Session,
        event_type: str,
        instance_id: str,
        data: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WorkflowEvent:
        event = WorkflowEvent(event_type, instance_id, data, step_id, actor_id, now)
        self.notify(event, session)
        return event


def build_event_bus(center: NotificationCenter) -> WorkflowSubject:
    """Default wiring: audit row, notifications, then log line."""
    subject = WorkflowSubject()
    subject.attach(AuditObserver())
    subject.attach(NotificationObserver(center))
    subject.attach(LogObserver())
    return subject
