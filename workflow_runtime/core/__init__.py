"""Core workflow runtime components."""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowConfigurationError,
    CycleDetectedError,
    NodeTypeNotRegisteredError,
    NodeRegistryError,
    NodeExecutionError,
    ExecutionContextError,
    ExecutionEngineError,
    WorkflowNotFoundError,
    ExecutionNotFoundError,
    StorageError,
    TransientError,
    JobQueueError,
    JobTimeoutError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .execution_context import ExecutionContext
from .expressions import ConditionEvaluator, evaluate_condition
from .graph import WorkflowGraph
from .node_registry import NodeHandler, NodeRegistry
from .execution_store import ExecutionStore
from .workflow_store import WorkflowStore
from .notifier import Notifier, LoggingNotifier, CompositeNotifier, WebSocketNotifier
from .executor import GraphExecutor
from .job_queue import Job, JobQueue
from .run_service import RunService

__all__ = [
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowConfigurationError",
    "CycleDetectedError",
    "NodeTypeNotRegisteredError",
    "NodeRegistryError",
    "NodeExecutionError",
    "ExecutionContextError",
    "ExecutionEngineError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "StorageError",
    "TransientError",
    "JobQueueError",
    "JobTimeoutError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "ExecutionContext",
    "ConditionEvaluator",
    "evaluate_condition",
    "WorkflowGraph",
    "NodeHandler",
    "NodeRegistry",
    "ExecutionStore",
    "WorkflowStore",
    "Notifier",
    "LoggingNotifier",
    "CompositeNotifier",
    "WebSocketNotifier",
    "GraphExecutor",
    "Job",
    "JobQueue",
    "RunService",
]
