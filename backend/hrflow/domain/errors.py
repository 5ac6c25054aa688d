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


# Authentication & Authorization Errors
class AuthenticationError(DomainError):
    """Token missing, invalid, or expired"""
    error_code = "AUTHENTICATION_ERROR"
    http_status = 401


class AuthorizationError(DomainError):
    """User lacks permission for action"""
    error_code = "AUTHORIZATION_ERROR"
    http_status = 403


class PermissionDeniedError(AuthorizationError):
    """Specific permission denied"""
    error_code = "PERMISSION_DENIED"


class NotAssigneeError(AuthorizationError):
    """Caller is neither the step assignee nor HR-privileged"""
    error_code = "NOT_ASSIGNEE"


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class DefinitionValidationError(ValidationError):
    """Workflow definition structure is invalid"""
    error_code = "DEFINITION_VALIDATION_ERROR"


class SystemDefinitionError(ValidationError):
    """System definitions are read-only"""
    error_code = "SYSTEM_DEFINITION_READ_ONLY"


class InactiveDefinitionError(ValidationError):
    """Cannot start an instance of an inactive definition"""
    error_code = "DEFINITION_INACTIVE"


class IllegalSkipError(ValidationError):
    """Step is neither optional nor skippable"""
    error_code = "STEP_NOT_SKIPPABLE"


class CommentRequiredError(ValidationError):
    """Approval step requires a decision comment"""
    error_code = "COMMENT_REQUIRED"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class DefinitionNotFoundError(NotFoundError):
    """Workflow definition not found or not visible to the tenant"""
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "INSTANCE_NOT_FOUND"


class StepNotFoundError(NotFoundError):
    """Step instance not found"""
    error_code = "STEP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict (e.g., concurrent modification)"""
    error_code = "CONFLICT"
    http_status = 409


class ConcurrencyError(ConflictError):
    """Optimistic concurrency conflict"""
    error_code = "CONCURRENCY_CONFLICT"


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


class DuplicateSlugError(AlreadyExistsError):
    """Slug already used in this scope"""
    error_code = "DUPLICATE_SLUG"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500
