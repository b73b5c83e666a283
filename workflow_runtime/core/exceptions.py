"""Custom exceptions for the workflow runtime with detailed error information.

Each subclass sets its default severity, category and recoverability as class
attributes; the job queue retries only errors whose ``recoverable`` flag is set.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


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
    QUEUE = "queue"


class WorkflowEngineError(Exception):
    """Base exception for all workflow runtime errors."""

    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.EXECUTION
    recoverable = False
    retry_after: Optional[int] = None

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        category: Optional[ErrorCategory] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        if severity is not None:
            self.severity = severity
        if category is not None:
            self.category = category
        if recoverable is not None:
            self.recoverable = recoverable
        if retry_after is not None:
            self.retry_after = retry_after
        self.details = details or {}
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

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
        self.context.update({key: value for key, value in kwargs.items() if value is not None})
        return self

    def add_details(self, **kwargs):
        self.details.update({key: value for key, value in kwargs.items() if value is not None})
        return self


class WorkflowValidationError(WorkflowEngineError):
    """Raised when a workflow definition does not parse."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, validation_errors: Optional[List[str]] = None,
                 workflow_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.validation_errors = validation_errors or []
        self.add_context(workflow_name=workflow_name)
        if self.validation_errors:
            self.add_details(validation_errors=self.validation_errors)


class WorkflowConfigurationError(WorkflowEngineError):
    """Raised at run start when a workflow cannot be executed as authored.

    No start node, a cycle, or a node type with no registered handler.
    """

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, workflow_id: Optional[str] = None,
                 problems: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.problems = problems or []
        self.add_context(workflow_id=workflow_id)
        if self.problems:
            self.add_details(problems=self.problems)


class CycleDetectedError(WorkflowConfigurationError):
    """Raised when the workflow graph contains a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        super().__init__(f"Cycle detected: {' -> '.join(cycle)}", **kwargs)
        self.cycle = cycle
        self.add_details(cycle=cycle)


class NodeTypeNotRegisteredError(WorkflowEngineError):
    """Raised when dispatch finds no handler for a node type."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION

    def __init__(self, node_type: str, **kwargs):
        super().__init__(f"No handler registered for node type '{node_type}'", **kwargs)
        self.node_type = node_type
        self.add_context(node_type=node_type)


class NodeRegistryError(WorkflowEngineError):
    """Raised when handler registration fails."""

    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, node_type: Optional[str] = None,
                 operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(node_type=node_type, operation=operation)


class NodeExecutionError(WorkflowEngineError):
    """Raised when a node handler fails."""

    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, node_id: Optional[str] = None, execution_id: Optional[str] = None,
                 execution_time: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.add_context(node_id=node_id, execution_id=execution_id)
        self.add_details(execution_time=execution_time)


class ExecutionContextError(WorkflowEngineError):
    """Raised when a value cannot be stored in or derived from the execution context."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(key=key)


class ExpressionError(WorkflowEngineError):
    """Raised when a condition expression uses syntax outside the allowed grammar."""

    severity = ErrorSeverity.LOW
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(expression=expression)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when run orchestration fails."""

    severity = ErrorSeverity.HIGH

    def __init__(self, message: str, execution_id: Optional[str] = None,
                 workflow_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(execution_id=execution_id, workflow_id=workflow_id)


class WorkflowNotFoundError(WorkflowEngineError):
    """Raised when a workflow ID does not resolve to a stored definition."""

    category = ErrorCategory.STORAGE

    def __init__(self, workflow_id: str, **kwargs):
        super().__init__(f"Workflow '{workflow_id}' not found", **kwargs)
        self.add_context(workflow_id=workflow_id)


class ExecutionNotFoundError(WorkflowEngineError):
    """Raised when an execution ID does not resolve to a record."""

    category = ErrorCategory.STORAGE

    def __init__(self, execution_id: str, **kwargs):
        super().__init__(f"Execution '{execution_id}' not found", **kwargs)
        self.add_context(execution_id=execution_id)


class StorageError(WorkflowEngineError):
    """Raised when a database read or write fails."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.STORAGE
    recoverable = True
    retry_after = 3

    def __init__(self, message: str, operation: Optional[str] = None,
                 table: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(operation=operation, table=table)


class TransientError(WorkflowEngineError):
    """Raised for transient errors that should be retried."""

    recoverable = True
    retry_after = 5


class JobQueueError(WorkflowEngineError):
    """Raised when the job queue rejects an operation."""

    category = ErrorCategory.QUEUE

    def __init__(self, message: str, queue_name: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(queue_name=queue_name)


class JobTimeoutError(WorkflowEngineError):
    """Raised when a job attempt exceeds its whole-job timeout."""

    category = ErrorCategory.RESOURCE
    recoverable = True

    def __init__(self, job_id: str, timeout: float, **kwargs):
        super().__init__(f"Job {job_id} timed out after {timeout} seconds", **kwargs)
        self.add_context(job_id=job_id)
        self.add_details(timeout=timeout)


class ConfigurationError(WorkflowEngineError):
    """Raised when settings or a node's configuration are invalid or missing."""

    severity = ErrorSeverity.HIGH
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.add_context(config_key=config_key)


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
