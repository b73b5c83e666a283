"""Data models for the workflow runtime."""

from .core import (
    utcnow,
    ExecutionStatusEnum,
    TERMINAL_STATUSES,
    NodeExecutionStatusEnum,
    LogEventType,
    ValueType,
    ValidationResult,
    NodeSpec,
    EdgeSpec,
    WorkflowDefinition,
    NodeResult,
    ExecutionRecord,
    NodeExecutionRecord,
    LogEntry,
    StatusEvent,
    ExecutionResult,
    BackoffType,
    BackoffPolicy,
    JobOptions,
    JobState,
    RunJobPayload,
    NodeJobPayload,
    QueueName,
)

__all__ = [
    "utcnow",
    "ExecutionStatusEnum",
    "TERMINAL_STATUSES",
    "NodeExecutionStatusEnum",
    "LogEventType",
    "ValueType",
    "ValidationResult",
    "NodeSpec",
    "EdgeSpec",
    "WorkflowDefinition",
    "NodeResult",
    "ExecutionRecord",
    "NodeExecutionRecord",
    "LogEntry",
    "StatusEvent",
    "ExecutionResult",
    "BackoffType",
    "BackoffPolicy",
    "JobOptions",
    "JobState",
    "RunJobPayload",
    "NodeJobPayload",
    "QueueName",
]
