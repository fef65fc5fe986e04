"""
Dependencies
Service container and request-scoped dependencies (authenticated actor, services).
"""

from datetime import datetime
from typing import Optional

from fastapi import Depends, HTTPException, Query, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import Engine

from .converters import user_to_actor
from .engine import (
    InstanceEngine,
    NotificationCenter,
    PermissionEvaluator,
    SLAMonitor,
    TemplateStore,
    WorkflowMetrics,
    build_event_bus,
)
from .errors import ValidationError
from .models import ActorContext
from .repository import DirectoryRepository
from .util import parse_timestamp

TOKEN_PREFIX = "mock-"

security = HTTPBearer(auto_error=False)


class Services:
    """All engine services bound to one database engine"""

    def __init__(self, engine: Engine):
        self.engine = engine
        self.directory = DirectoryRepository(engine)
        self.notifications = NotificationCenter(engine)
        self.events = build_event_bus(self.notifications)
        self.permissions = PermissionEvaluator(engine)
        self.templates = TemplateStore(engine, self.permissions)
        self.instances = InstanceEngine(engine, self.permissions, self.events)
        self.sla = SLAMonitor(engine, self.permissions, self.events)
        self.metrics = WorkflowMetrics(engine, self.permissions)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    services: Services = Depends(get_services),
) -> ActorContext:
    """
    Validate bearer token.
    Tokens look like 'mock-<userId>'; the user must exist and be active.
    """
    if not credentials:
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = credentials.credentials
    if not token.startswith(TOKEN_PREFIX):
        raise HTTPException(status_code=401, detail="Unauthorized")

    user = services.directory.get_user_row(token[len(TOKEN_PREFIX):])
    if user is None or not user.active:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_to_actor(user)


def query_timestamp(name: str, value: Optional[str]) -> Optional[datetime]:
    """ISO query parameter as naive UTC; unparseable values are a 400."""
    try:
        return parse_timestamp(value)
    except (ValueError, OverflowError):
        raise ValidationError(f"Invalid timestamp '{value}'", details={name: value}) from None


class Period:
    """Optional inclusive reporting window from ?startDate=&endDate="""

    def __init__(
        self,
        startDate: Optional[str] = Query(default=None),
        endDate: Optional[str] = Query(default=None),
    ):
        self.start = query_timestamp("startDate", startDate)
        self.end = query_timestamp("endDate", endDate)
        if self.start and self.end and self.start > self.end:
            raise ValidationError(
                "startDate must not be after endDate",
                details={"startDate": startDate, "endDate": endDate},
            )
