from typing import List, Optional

from fastapi import APIRouter, Depends

from ..deps import Services, get_actor, get_services
from ..models import ActorContext, TemplateCreateDTO, TemplateDTO, TemplateUpdateDTO

router = APIRouter(prefix="/workflow-templates", tags=["workflow-templates"])


@router.get("", response_model=List[TemplateDTO])
def list_templates(
    active: Optional[bool] = None,
    department: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[TemplateDTO]:
    return services.templates.list_templates(active=active, department=department)


@router.post("", response_model=TemplateDTO, status_code=201)
def create_template(
    data: TemplateCreateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> TemplateDTO:
    """Create a workflow template (administrators only)"""
    return services.templates.create_template(data, actor)


@router.get("/{template_id}", response_model=TemplateDTO)
def get_template(
    template_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> TemplateDTO:
    return services.templates.get_template(template_id)


@router.put("/{template_id}", response_model=TemplateDTO)
def update_template(
    template_id: str,
    data: TemplateUpdateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> TemplateDTO:
    """Edit a template; bumps its version, running instances are unaffected"""
    return services.templates.update_template(template_id, data, actor)


@router.delete("/{template_id}", status_code=204)
def delete_template(
    template_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
):
    services.templates.delete_template(template_id, actor)
    return None
