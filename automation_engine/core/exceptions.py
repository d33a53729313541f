"""Exceptions for the automation engine with detailed error information."""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    SECURITY = "security"


class WorkflowEngineError(Exception):
    """Base exception for all automation engine errors."""

    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class TriggerValidationError(WorkflowEngineError):
    """Raised when a trigger event is rejected before hand-off.

    The error code names the reason (NOT_FOUND, INACTIVE, NO_MATCHING_TRIGGER,
    FILE_TOO_LARGE, ...) and selects the HTTP status returned to the caller.
    """

    STATUS_BY_CODE = {
        "NOT_FOUND": 404,
        "INACTIVE": 404,
        "NO_MATCHING_TRIGGER": 400,
        "NO_FILE": 400,
        "FILE_TOO_LARGE": 413,
        "FILE_TYPE_NOT_ALLOWED": 415,
        "INVALID_FILE_CONTENT": 400,
        "MALICIOUS_CONTENT": 400,
        "INVALID_JSON": 400,
        "INVALID_PAYLOAD": 422,
    }

    def __init__(
        self,
        message: str,
        error_code: str = "INVALID_PAYLOAD",
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            error_code=error_code,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.http_status = self.STATUS_BY_CODE.get(error_code, 400)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class AuthenticationError(WorkflowEngineError):
    """Raised when a trigger credential or signature is rejected.

    The gate's rejection reason is kept on the exception for logging only; it is
    never part of the response body.
    """

    http_status = 401

    def __init__(
        self,
        message: str = "Authentication failed",
        reason: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            error_code="UNAUTHORIZED",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.SECURITY,
            **kwargs
        )
        self.reason = reason
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class NodeExecutionError(WorkflowEngineError):
    """A node failure, recorded on the node's step instead of failing the run."""

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "NODE_FAILED")
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if run_id:
            self.add_context(run_id=run_id)

    def step_error(self) -> Dict[str, Any]:
        """Error body recorded on the node's step."""
        return {"message": self.message, "code": self.error_code, **self.details}


class NodeTimeoutError(NodeExecutionError):
    """A node that exceeded its execution bound."""

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, error_code="NODE_TIMEOUT", **kwargs)
        if timeout is not None:
            self.add_details(timeout=timeout)


class RunStateError(WorkflowEngineError):
    """Raised on an illegal run lifecycle operation."""

    http_status = 409

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if operation:
            self.add_context(operation=operation)


class RunNotFoundError(RunStateError):
    """Raised when a run id is unknown."""

    http_status = 404

    def __init__(self, run_id: str):
        super().__init__(f"Run {run_id} not found", run_id=run_id, error_code="RUN_NOT_FOUND")


class HandlerRegistryError(WorkflowEngineError):
    """Raised when node kind registration or resolution fails."""

    def __init__(
        self,
        message: str,
        node_kind: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if node_kind:
            self.add_context(node_kind=node_kind)


class ExecutionEngineError(WorkflowEngineError):
    """Raised on an unexpected executor fault."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow id is unknown to the repository."""

    http_status = 404

    def __init__(self, workflow_id: str):
        super().__init__(
            f"Workflow {workflow_id} not found",
            error_code="NOT_FOUND",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
        )
        self.add_context(workflow_id=workflow_id)


class WorkflowDefinitionError(WorkflowEngineError):
    """Raised when a workflow document fails validation."""

    http_status = 400

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            error_code="INVALID_WORKFLOW",
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )


class ResourceExhaustionError(WorkflowEngineError):
    """Raised when the run queue or another bounded resource is full."""

    http_status = 503

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        current_usage: Optional[int] = None,
        limit: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            error_code="SERVICE_UNAVAILABLE",
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.RESOURCE,
            recoverable=True,
            retry_after=30,
            **kwargs
        )
        if resource_type:
            self.add_context(resource_type=resource_type)
        if current_usage is not None and limit is not None:
            self.add_details(current_usage=current_usage, limit=limit)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            recoverable=True,
            retry_after=5,
            **kwargs
        )


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
