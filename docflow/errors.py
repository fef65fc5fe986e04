"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to API response dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404

    entity: str = "Resource"

    def __init__(self, entity_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{self.entity} {entity_id} not found",
            details={"entity": self.entity, "id": entity_id},
        )
        self.entity_id = entity_id


class TemplateNotFoundError(NotFoundError):
    error_code = "TEMPLATE_NOT_FOUND"
    entity = "WorkflowTemplate"


class InstanceNotFoundError(NotFoundError):
    error_code = "INSTANCE_NOT_FOUND"
    entity = "WorkflowInstance"


class StepNotFoundError(NotFoundError):
    error_code = "STEP_NOT_FOUND"
    entity = "StepState"


class PermissionNotFoundError(NotFoundError):
    error_code = "PERMISSION_NOT_FOUND"
    entity = "PermissionGrant"


class NotificationNotFoundError(NotFoundError):
    error_code = "NOTIFICATION_NOT_FOUND"
    entity = "Notification"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"
    entity = "User"


class DepartmentNotFoundError(NotFoundError):
    error_code = "DEPARTMENT_NOT_FOUND"
    entity = "Department"


class SubjectNotFoundError(NotFoundError):
    """The document a workflow is started against does not exist"""
    error_code = "DOCUMENT_NOT_FOUND"
    entity = "Document"


# State Errors
class InvalidStateTransitionError(DomainError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE_TRANSITION"
    http_status = 409

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = dict(details or {})
        if entity_id is not None:
            payload["id"] = entity_id
        if expected is not None:
            payload["expected"] = expected
        if actual is not None:
            payload["actual"] = actual
        super().__init__(message, details=payload)


class TemplateInactiveError(InvalidStateTransitionError):
    error_code = "TEMPLATE_INACTIVE"


class StepNotActiveError(InvalidStateTransitionError):
    error_code = "STEP_NOT_ACTIVE"


# Authorization Errors
class NotAuthorizedError(DomainError):
    """Actor lacks the resolved permission or assignment"""
    error_code = "NOT_AUTHORIZED"
    http_status = 403


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, problems: Optional[list] = None, details: Optional[Dict[str, Any]] = None):
        payload = dict(details or {})
        if problems:
            payload["problems"] = problems
        super().__init__(message, details=payload)
        self.problems = problems or []


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (concurrent modification, resource still in use)"""
    error_code = "CONFLICT"
    http_status = 409
