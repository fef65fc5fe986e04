from typing import List, Optional

from fastapi import APIRouter, Depends

from ..deps import Services, get_actor, get_services
from ..models import (
    ActorContext,
    CancelInstanceDTO,
    InstanceDTO,
    InstanceStatus,
    StartInstanceDTO,
    StepActionDTO,
    TaskDTO,
    WorkflowEventDTO,
)

router = APIRouter(prefix="/workflows", tags=["workflows"])


@router.post("", response_model=InstanceDTO, status_code=201)
def start_workflow(
    data: StartInstanceDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> InstanceDTO:
    """Start a workflow instance for a document"""
    return services.instances.start_instance(data.template_id, data.subject_ref, actor, data.variables)


@router.get("", response_model=List[InstanceDTO])
def list_workflows(
    status: Optional[InstanceStatus] = None,
    subjectRef: Optional[str] = None,
    templateId: Optional[str] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[InstanceDTO]:
    """Instances the caller takes part in or holds `view` on"""
    return services.instances.list_instances(
        status=status, subject_ref=subjectRef, template_id=templateId, actor=actor
    )


@router.get("/tasks/mine", response_model=List[TaskDTO])
def my_tasks(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[TaskDTO]:
    """Steps currently waiting on the caller"""
    return services.instances.my_tasks(actor)


@router.get("/{instance_id}", response_model=InstanceDTO)
def get_workflow(
    instance_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> InstanceDTO:
    return services.instances.get_instance(instance_id, actor)


@router.put("/{instance_id}/steps/{step_id}", response_model=InstanceDTO)
def process_step(
    instance_id: str,
    step_id: str,
    data: StepActionDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> InstanceDTO:
    """Approve, reject, review, sign or complete a step"""
    return services.instances.process_step(
        instance_id,
        step_id,
        actor,
        data.action,
        remarks=data.remarks,
        form_data=data.form_data,
        expected_version=data.lock_version,
    )


@router.post("/{instance_id}/cancel", response_model=InstanceDTO)
def cancel_workflow(
    instance_id: str,
    data: CancelInstanceDTO,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> InstanceDTO:
    return services.instances.cancel_instance(
        instance_id, data.reason, actor, expected_version=data.lock_version
    )


@router.get("/{instance_id}/events", response_model=List[WorkflowEventDTO])
def workflow_events(
    instance_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[WorkflowEventDTO]:
    """Audit trail, oldest first"""
    return services.instances.list_events(instance_id, actor)
