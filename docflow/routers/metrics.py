from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..deps import Period, Services, get_actor, get_services
from ..models import (
    ActorContext,
    DashboardMetricsDTO,
    DepartmentPerformanceDTO,
    SLAPerformanceDTO,
    TemplatePerformanceDTO,
    UserPerformanceDTO,
)
from ..util import utc_now

router = APIRouter(prefix="/workflow-metrics", tags=["workflow-metrics"])


@router.get("/dashboard", response_model=DashboardMetricsDTO)
def dashboard_metrics(
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DashboardMetricsDTO:
    """Rollup over every template the caller holds `viewMetrics` on"""
    return services.metrics.dashboard(actor, period.start, period.end)


@router.get("/templates/{template_id}", response_model=TemplatePerformanceDTO)
def template_metrics(
    template_id: str,
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> TemplatePerformanceDTO:
    return services.metrics.template_performance(template_id, actor, period.start, period.end)


@router.get("/templates/{template_id}/export")
def export_template_instances(
    template_id: str,
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> StreamingResponse:
    """Instances of one template as CSV (`exportData`)"""
    content = services.metrics.export_instances(template_id, actor, period.start, period.end)
    filename = f"workflows_{template_id}_{utc_now().strftime('%Y%m%d_%H%M%S')}.csv"
    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/sla/{template_id}", response_model=SLAPerformanceDTO)
def sla_metrics(
    template_id: str,
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> SLAPerformanceDTO:
    return services.metrics.sla_performance(template_id, actor, period.start, period.end)


@router.get("/departments/{department}", response_model=DepartmentPerformanceDTO)
def department_metrics(
    department: str,
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DepartmentPerformanceDTO:
    return services.metrics.department_performance(department, actor, period.start, period.end)


@router.get("/users/{user_id}", response_model=UserPerformanceDTO)
def user_metrics(
    user_id: str,
    period: Period = Depends(),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> UserPerformanceDTO:
    """The caller's own figures, or anyone's on templates with `viewMetrics`"""
    return services.metrics.user_performance(user_id, actor, period.start, period.end)
