"""
Notification Center
Per-user inbox fed by engine events. Rows are append-only; only read state changes.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import Engine, func, update
from sqlmodel import Session, select

from ..converters import notification_to_dto
from ..errors import NotificationNotFoundError
from ..logging_config import get_logger
from ..models import (
    NotificationTable,
    NotificationDTO,
    NotificationPage,
    NotificationType,
    NotificationPriority,
)
from ..util import new_id, clamp_limit, clamp_offset, resolve_now

logger = get_logger(__name__)


class NotificationCenter:
    """Creates and serves workflow notifications"""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ------------------------------------------------------------------
    # Writes (run inside the caller's transaction)
    # ------------------------------------------------------------------

    def create(
        self,
        session: Session,
        recipient_id: str,
        type: NotificationType,
        title: str,
        message: str = "",
        priority: NotificationPriority = NotificationPriority.medium,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NotificationTable:
        row = NotificationTable(
            id=new_id("ntf_"),
            recipient_id=recipient_id,
            instance_id=instance_id,
            step_id=step_id,
            type=type.value,
            priority=priority.value,
            title=title,
            message=message,
            action_url=f"/workflows/{instance_id}" if instance_id else None,
            created_at=resolve_now(now),
        )
        session.add(row)
        return row

    def create_many(
        self,
        session: Session,
        recipients: List[str],
        type: NotificationType,
        title: str,
        message: str = "",
        priority: NotificationPriority = NotificationPriority.medium,
        instance_id: Optional[str] = None,
        step_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """One notification per distinct recipient; returns how many were created."""
        seen = set()
        for recipient in recipients:
            if not recipient or recipient in seen:
                continue
            seen.add(recipient)
            self.create(session, recipient, type, title, message, priority, instance_id, step_id, now)
        return len(seen)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def list(
        self,
        user_id: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        type: Optional[NotificationType] = None,
        priority: Optional[NotificationPriority] = None,
        unread_only: bool = False,
    ) -> NotificationPage:
        limit = clamp_limit(limit)
        offset = clamp_offset(offset)

        filters = [NotificationTable.recipient_id == user_id]
        if type is not None:
            filters.append(NotificationTable.type == type.value)
        if priority is not None:
            filters.append(NotificationTable.priority == priority.value)
        if unread_only:
            filters.append(NotificationTable.read == False)  # noqa: E712

        with Session(self.engine) as session:
            total = session.exec(select(func.count()).select_from(NotificationTable).where(*filters)).one()
            rows = session.exec(
                select(NotificationTable)
                .where(*filters)
                .order_by(NotificationTable.created_at.desc(), NotificationTable.id.desc())
                .offset(offset)
                .limit(limit)
            ).all()
            return NotificationPage(
                items=[notification_to_dto(r) for r in rows],
                total=total,
                limit=limit,
                offset=offset,
            )

    def unread_count(self, user_id: str) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(NotificationTable)
                .where(NotificationTable.recipient_id == user_id, NotificationTable.read == False)  # noqa: E712
            ).one()

    def mark_read(self, notification_id: str, user_id: str, now: Optional[datetime] = None) -> NotificationDTO:
        with Session(self.engine) as session:
            row = session.get(NotificationTable, notification_id)
            # Other users' notifications are reported as missing
            if not row or row.recipient_id != user_id:
                raise NotificationNotFoundError(notification_id)
            if not row.read:
                row.read = True
                row.read_at = resolve_now(now)
                session.add(row)
                session.commit()
                session.refresh(row)
            return notification_to_dto(row)

    def mark_all_read(
        self,
        user_id: str,
        types: Optional[List[NotificationType]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        stmt = (
            update(NotificationTable)
            .where(NotificationTable.recipient_id == user_id, NotificationTable.read == False)  # noqa: E712
            .values(read=True, read_at=resolve_now(now))
        )
        if types:
            stmt = stmt.where(NotificationTable.type.in_([t.value for t in types]))
        with Session(self.engine) as session:
            result = session.execute(stmt)
            session.commit()
            count = result.rowcount or 0
        logger.info(f"Marked {count} notifications read", extra={"actor_id": user_id, "count": count})
        return count
