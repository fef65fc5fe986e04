from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..deps import Services, get_actor, get_services
from ..models import (
    ActorContext,
    NotificationDTO,
    NotificationPage,
    NotificationPriority,
    NotificationType,
)

router = APIRouter(prefix="/workflow-notifications", tags=["workflow-notifications"])


@router.get("", response_model=NotificationPage)
def list_notifications(
    limit: Optional[int] = Query(default=None),
    offset: Optional[int] = Query(default=None),
    type: Optional[NotificationType] = None,
    priority: Optional[NotificationPriority] = None,
    unreadOnly: bool = False,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> NotificationPage:
    """Caller's notifications, newest first"""
    return services.notifications.list(
        actor.id, limit=limit, offset=offset, type=type, priority=priority, unread_only=unreadOnly
    )


@router.get("/unread/count")
def unread_count(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return {"count": services.notifications.unread_count(actor.id)}


@router.put("/read/all")
def mark_all_read(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
):
    return {"updated": services.notifications.mark_all_read(actor.id)}


@router.put("/{notification_id}/read", response_model=NotificationDTO)
def mark_read(
    notification_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> NotificationDTO:
    return services.notifications.mark_read(notification_id, actor.id)
