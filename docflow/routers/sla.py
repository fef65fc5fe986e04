from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..deps import Services, get_actor, get_services, query_timestamp
from ..engine.permissions import is_admin
from ..errors import NotAuthorizedError
from ..models import ActorContext, AddAssigneesDTO, ReassignDTO, SLACheckSummary, SLAStatsDTO, StepStateDTO
from ..scheduler import run_sla_check

router = APIRouter(prefix="/workflow", tags=["workflow-sla"])


def as_of(at: Optional[str] = Query(default=None, description="ISO timestamp to evaluate at; defaults to now")) -> Optional[datetime]:
    return query_timestamp("at", at)


@router.get("/sla/stats", response_model=SLAStatsDTO)
def sla_stats(
    now: Optional[datetime] = Depends(as_of),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SLAStatsDTO:
    return services.sla.stats(now, actor)


@router.get("/sla/overdue", response_model=List[StepStateDTO])
def sla_overdue(
    now: Optional[datetime] = Depends(as_of),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[StepStateDTO]:
    """In-progress steps past their deadline"""
    return services.sla.overdue(now, actor)


@router.get("/sla/upcoming", response_model=List[StepStateDTO])
def sla_upcoming(
    hours: float = Query(default=24, gt=0),
    now: Optional[datetime] = Depends(as_of),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[StepStateDTO]:
    """In-progress steps due within the next `hours`"""
    return services.sla.upcoming(now, hours=hours, actor=actor)


@router.post("/sla/check", response_model=SLACheckSummary)
def sla_check(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SLACheckSummary:
    """Run the SLA check now (same lease as the background job)"""
    if not is_admin(actor):
        raise NotAuthorizedError("Only administrators can trigger the SLA check", details={"actorId": actor.id})
    return run_sla_check(services)


@router.post("/steps/{step_id}/reassign", response_model=StepStateDTO)
def reassign_step(
    step_id: str,
    data: ReassignDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> StepStateDTO:
    return services.sla.reassign(step_id, data.assign_to, data.reason, actor)


@router.post("/steps/{step_id}/assignees", response_model=StepStateDTO)
def add_step_assignees(
    step_id: str,
    data: AddAssigneesDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> StepStateDTO:
    """Add users to an in-progress step without removing its current holders"""
    return services.sla.add_assignees(step_id, data.user_ids, data.reason, actor)
