"""
Workflow Error Module

Typed error taxonomy for the workflow engine. Every error carries a stable
machine-readable ``code`` so transport adapters can map it without parsing
messages.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors"""

    code = "WORKFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for adapters and logs"""
        return {
            'code': self.code,
            'message': self.message,
            'retryable': self.retryable,
            'details': self.details
        }


class InvalidGraphError(WorkflowError):
    """Template stage/transition graph failed validation"""
    code = "INVALID_GRAPH"


class VersionConflictError(WorkflowError):
    """Template version could not be allocated after retries"""
    code = "VERSION_CONFLICT"
    retryable = True


class DuplicateInstanceError(WorkflowError):
    """A live instance already governs the entity"""
    code = "DUPLICATE_INSTANCE"


class IllegalTransitionError(WorkflowError):
    """No such edge from the current stage, or the instance is not in a movable state"""
    code = "ILLEGAL_TRANSITION"


class ConditionNotMetError(WorkflowError):
    """Transition condition evaluated false"""
    code = "CONDITION_NOT_MET"


class ForbiddenError(WorkflowError):
    """Actor lacks every role allowed on the transition"""
    code = "FORBIDDEN"


class StaleInstanceError(WorkflowError):
    """Optimistic lock lost; re-read and retry"""
    code = "STALE_INSTANCE"
    retryable = True


class AlreadyTerminalError(WorkflowError):
    """Instance is COMPLETED or CANCELLED"""
    code = "ALREADY_TERMINAL"


class NotFoundError(WorkflowError):
    """Template, instance or rule does not exist (or belongs to another tenant)"""
    code = "NOT_FOUND"


class TemplateInUseError(WorkflowError):
    """Template cannot be deleted because it is published or referenced"""
    code = "TEMPLATE_IN_USE"


ERROR_CODES = {
    cls.code: cls for cls in (
        InvalidGraphError, VersionConflictError, DuplicateInstanceError,
        IllegalTransitionError, ConditionNotMetError, ForbiddenError,
        StaleInstanceError, AlreadyTerminalError, NotFoundError,
        TemplateInUseError,
    )
}
