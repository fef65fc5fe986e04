from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..deps import Services, get_actor, get_services
from ..models import (
    ActorContext,
    CopyPermissionsDTO,
    EffectivePermissionsDTO,
    PermissionContext,
    PermissionGrantCreateDTO,
    PermissionGrantDTO,
    PermissionGrantUpdateDTO,
)

router = APIRouter(prefix="/workflow-permissions", tags=["workflow-permissions"])


@router.get("/templates/{template_id}", response_model=List[PermissionGrantDTO])
def list_template_permissions(
    template_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[PermissionGrantDTO]:
    """Grants of a template, highest priority first"""
    return services.permissions.list_for_template(template_id)


@router.get("/effective", response_model=EffectivePermissionsDTO)
def effective_permissions(
    templateId: str = Query(...),
    fileType: Optional[str] = None,
    department: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> EffectivePermissionsDTO:
    """Caller's resolved permissions on a template"""
    context = PermissionContext(file_type=fileType, department=department)
    return services.permissions.effective_permissions(actor, templateId, context)


@router.post("", response_model=PermissionGrantDTO, status_code=201)
def create_permission(
    data: PermissionGrantCreateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> PermissionGrantDTO:
    return services.permissions.create_grant(data, actor)


@router.post("/copy", response_model=List[PermissionGrantDTO], status_code=201)
def copy_permissions(
    data: CopyPermissionsDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[PermissionGrantDTO]:
    """Duplicate every grant of one template onto another"""
    return services.permissions.copy_permissions(data.source_template_id, data.target_template_id, actor)


@router.put("/{grant_id}", response_model=PermissionGrantDTO)
def update_permission(
    grant_id: str,
    data: PermissionGrantUpdateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> PermissionGrantDTO:
    return services.permissions.update_grant(grant_id, data, actor)


@router.delete("/{grant_id}", status_code=204)
def delete_permission(
    grant_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
):
    services.permissions.delete_grant(grant_id, actor)
    return None
