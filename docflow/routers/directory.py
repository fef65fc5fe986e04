"""Users, departments and documents"""
from typing import List, Optional

from fastapi import APIRouter, Depends

from ..deps import Services, get_actor, get_services
from ..engine.permissions import is_admin
from ..errors import NotAuthorizedError
from ..models import (
    ActorContext,
    DepartmentCreateDTO,
    DepartmentDTO,
    DepartmentUpdateDTO,
    DocumentCreateDTO,
    DocumentDTO,
    DocumentUpdateDTO,
    UserCreateDTO,
    UserDTO,
    UserUpdateDTO,
)

router = APIRouter(tags=["directory"])


def require_admin(actor: ActorContext = Depends(get_actor)) -> ActorContext:
    if not is_admin(actor):
        raise NotAuthorizedError("Administrator role required", details={"actorId": actor.id})
    return actor


# ============================================================================
# Users
# ============================================================================

@router.get("/users", response_model=List[UserDTO])
def list_users(
    role: Optional[str] = None,
    departmentId: Optional[str] = None,
    active: Optional[bool] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[UserDTO]:
    return services.directory.list_users(role=role, department_id=departmentId, active=active)


@router.post("/users", response_model=UserDTO, status_code=201)
def create_user(
    data: UserCreateDTO,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> UserDTO:
    return services.directory.create_user(data)


@router.get("/users/{user_id}", response_model=UserDTO)
def get_user(
    user_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> UserDTO:
    return services.directory.get_user(user_id)


@router.put("/users/{user_id}", response_model=UserDTO)
def update_user(
    user_id: str,
    data: UserUpdateDTO,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> UserDTO:
    return services.directory.update_user(user_id, data)


@router.delete("/users/{user_id}", response_model=UserDTO)
def deactivate_user(
    user_id: str,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> UserDTO:
    """Deactivate (users are kept for the audit trail)"""
    return services.directory.deactivate_user(user_id)


# ============================================================================
# Departments
# ============================================================================

@router.get("/departments", response_model=List[DepartmentDTO])
def list_departments(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[DepartmentDTO]:
    return services.directory.list_departments()


@router.post("/departments", response_model=DepartmentDTO, status_code=201)
def create_department(
    data: DepartmentCreateDTO,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> DepartmentDTO:
    return services.directory.create_department(data)


@router.get("/departments/{department_id}", response_model=DepartmentDTO)
def get_department(
    department_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DepartmentDTO:
    return services.directory.get_department(department_id)


@router.put("/departments/{department_id}", response_model=DepartmentDTO)
def update_department(
    department_id: str,
    data: DepartmentUpdateDTO,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
) -> DepartmentDTO:
    return services.directory.update_department(department_id, data)


@router.delete("/departments/{department_id}", status_code=204)
def delete_department(
    department_id: str,
    actor: ActorContext = Depends(require_admin),
    services: Services = Depends(get_services),
):
    services.directory.delete_department(department_id)
    return None


# ============================================================================
# Documents
# ============================================================================

@router.get("/documents", response_model=List[DocumentDTO])
def list_documents(
    ownerId: Optional[str] = None,
    departmentId: Optional[str] = None,
    fileType: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[DocumentDTO]:
    return services.directory.list_documents(owner_id=ownerId, department_id=departmentId, file_type=fileType)


@router.post("/documents", response_model=DocumentDTO, status_code=201)
def create_document(
    data: DocumentCreateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentDTO:
    """Register a document; owner defaults to the caller"""
    return services.directory.create_document(data, actor)


@router.get("/documents/{document_id}", response_model=DocumentDTO)
def get_document(
    document_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentDTO:
    return services.directory.get_document(document_id)


@router.put("/documents/{document_id}", response_model=DocumentDTO)
def update_document(
    document_id: str,
    data: DocumentUpdateDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> DocumentDTO:
    document = services.directory.get_document(document_id)
    if document.owner_id != actor.id and not is_admin(actor):
        raise NotAuthorizedError("Only the owner can edit this document", details={"id": document_id})
    return services.directory.update_document(document_id, data)


@router.delete("/documents/{document_id}", status_code=204)
def delete_document(
    document_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
):
    document = services.directory.get_document(document_id)
    if document.owner_id != actor.id and not is_admin(actor):
        raise NotAuthorizedError("Only the owner can delete this document", details={"id": document_id})
    services.directory.delete_document(document_id)
    return None
