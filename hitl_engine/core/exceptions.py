"""Exception hierarchy of the workflow engine.

Every error carries a ``details`` dict (data about the failure) and a
``context`` dict (where it happened: execution, node, table...). The API
layer renders both through ``create_error_response``.
"""

import traceback
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    RESUME = "resume"
    CONFIGURATION = "configuration"
    NETWORK = "network"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    Subclasses set ``severity``, ``category`` and ``recoverable`` as class
    attributes. ``recoverable`` tells the retry policy whether another
    attempt may succeed.
    """

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or type(self).__name__
        self.details = dict(details or {})
        self.context = dict(context or {})
        self.timestamp = datetime.utcnow()

    def _annotate(self, target: Dict[str, Any], **values) -> None:
        # Unset values are left out of the rendered error
        target.update({key: value for key, value in values.items() if value is not None})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "details": self.details,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class DefinitionError(WorkflowEngineError):
    """A workflow definition is malformed, unknown or structurally invalid. Never retried."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None,
                 workflow_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = list(validation_errors or [])
        self._annotate(self.context, workflow_name=workflow_name)
        if self.validation_errors:
            self.details["validation_errors"] = self.validation_errors


class ExecutorError(WorkflowEngineError):
    """A step executor kept raising until its retries ran out."""

    severity = ErrorSeverity.HIGH
    recoverable = True

    def __init__(self, message: str, node_id: Optional[str] = None, execution_id: Optional[str] = None,
                 attempts: Optional[int] = None, cause: Optional[BaseException] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.attempts = attempts
        self.cause = cause
        self._annotate(self.context, node_id=node_id, execution_id=execution_id)
        self._annotate(self.details, attempts=attempts)

    @property
    def stack(self) -> Optional[str]:
        """Traceback of the executor's own exception."""
        if self.cause is None:
            return None
        return "".join(traceback.format_exception(type(self.cause), self.cause, self.cause.__traceback__))


class LoopLimitError(WorkflowEngineError):
    """A node was entered more times than ``max_node_visits`` allows."""

    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, node_id: Optional[str] = None, limit: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self._annotate(self.context, node_id=node_id)
        self._annotate(self.details, limit=limit)


class ResumeError(WorkflowEngineError):
    """Resume of an unknown execution, one not waiting for review, or with an action the task does not offer."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.RESUME

    def __init__(self, message: str, execution_id: Optional[str] = None,
                 current_status: Optional[str] = None, not_found: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.not_found = not_found
        self._annotate(self.context, execution_id=execution_id)
        self._annotate(self.details, current_status=current_status)


class PersistenceError(WorkflowEngineError):
    """A document store read or write failed."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True

    def __init__(self, message: str, operation: Optional[str] = None, table: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self._annotate(self.context, operation=operation, table=table)


class ConfigurationError(WorkflowEngineError):
    """Invalid configuration or executor registration."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self._annotate(self.context, config_key=config_key)


class TaskServiceError(WorkflowEngineError):
    """The external task service could not be reached or refused the task."""

    category = ErrorCategory.NETWORK
    recoverable = True

    def __init__(self, message: str, endpoint: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self._annotate(self.context, endpoint=endpoint)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """JSON body for an engine error in an API response."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "timestamp": error.timestamp.isoformat(),
        },
        "context": error.context,
    }
