"""Core Pydantic models for the workflow runtime."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatusEnum.COMPLETED,
    ExecutionStatusEnum.FAILED,
    ExecutionStatusEnum.CANCELLED,
})


class NodeExecutionStatusEnum(str, Enum):
    """Enumeration of per-node execution statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogEventType(str, Enum):
    """Enumeration of execution log event types."""
    WORKFLOW_QUEUED = "workflow_queued"
    WORKFLOW_START = "workflow_start"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    NODE_START = "node_start"
    NODE_COMPLETE = "node_complete"
    NODE_ERROR = "node_error"


class ValueType(str, Enum):
    """Closed set of value kinds a workflow variable may hold."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


class ValidationResult(BaseModel):
    """Result of workflow validation."""
    is_valid: bool = Field(..., description="Whether the workflow is valid")
    errors: List[str] = Field(default_factory=list, description="List of validation errors")
    warnings: List[str] = Field(default_factory=list, description="List of validation warnings")


_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_:-]+$')


class NodeSpec(BaseModel):
    """Definition of a workflow node."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Unique identifier for the node within the workflow")
    type: str = Field(..., description="Node type tag resolved by the dispatch registry")
    config: Dict[str, Any] = Field(default_factory=dict, description="Node configuration")
    continue_on_error: bool = Field(
        False,
        alias="continueOnError",
        description="Keep traversing successors when this node's handler raises"
    )
    label: Optional[str] = Field(None, description="Human readable label")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _ID_PATTERN.match(id_value.strip()):
            raise ValueError(
                "Node ID must contain only alphanumeric characters, underscores, hyphens, colons"
            )
        return id_value.strip()

    @field_validator('type')
    @classmethod
    def validate_type(cls, type_tag):
        """Ensure the type tag is present."""
        if not type_tag or not type_tag.strip():
            raise ValueError("Node type cannot be empty")
        return type_tag.strip()


class EdgeSpec(BaseModel):
    """Directed edge between two workflow nodes."""
    id: Optional[str] = Field(None, description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    branch: Optional[str] = Field(
        None,
        description="Condition branch this edge belongs to ('true' or 'false')"
    )

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @field_validator('branch')
    @classmethod
    def normalize_branch(cls, branch):
        if branch is None:
            return None
        return str(branch).strip().lower() or None

    @model_validator(mode='after')
    def default_id(self):
        if not self.id:
            self.id = f"{self.source}->{self.target}"
        return self


class WorkflowDefinition(BaseModel):
    """Stored graph a user authored: nodes plus directed edges."""
    id: Optional[str] = Field(None, description="Workflow ID, assigned by the store")
    name: str = Field(..., description="Name of the workflow")
    description: str = Field("", description="Description of the workflow")
    nodes: List[NodeSpec] = Field(..., description="Ordered list of nodes")
    edges: List[EdgeSpec] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @model_validator(mode='after')
    def validate_edge_references(self):
        """Every edge must connect nodes that exist."""
        if not self.nodes:
            raise ValueError("Workflow must contain at least one node")

        node_ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.source not in node_ids:
                raise ValueError(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in node_ids:
                raise ValueError(f"Edge references non-existent target node: {edge.target}")
        return self

    def get_node(self, node_id: str) -> Optional[NodeSpec]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


class NodeResult(BaseModel):
    """Outcome of dispatching a single node to its handler."""
    output: Any = Field(None, description="Structured output returned by the handler")
    success: bool = Field(True, description="False when the handler reported a remote failure")
    error: Optional[str] = Field(None, description="Handler-reported error message")


class ExecutionRecord(BaseModel):
    """Persisted status of one workflow run."""
    id: str
    workflow_id: str
    status: ExecutionStatusEnum
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Optional[Dict[str, Any]] = None
    node_outputs: Optional[Dict[str, Any]] = None
    execution_metadata: Optional[Dict[str, Any]] = None
    last_node_id: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    max_attempts: Optional[int] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class NodeExecutionRecord(BaseModel):
    """Persisted audit row for one node visit within a run."""
    id: int
    execution_id: str
    node_id: str
    node_type: str
    status: NodeExecutionStatusEnum
    input_data: Optional[Dict[str, Any]] = None
    output_data: Any = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class LogEntry(BaseModel):
    """Log entry for workflow execution events."""
    timestamp: datetime = Field(..., description="Timestamp of the log entry")
    execution_id: str = Field(..., description="ID of the workflow run")
    node_id: Optional[str] = Field(None, description="ID of the node that generated the log")
    level: str = Field("info", description="Log level")
    event_type: LogEventType = Field(..., description="Type of event")
    message: str = Field(..., description="Log message")


class StatusEvent(BaseModel):
    """Status transition published to real-time observers."""
    execution_id: str
    workflow_id: str
    node_id: Optional[str] = None
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    progress: Optional[float] = None
    message: Optional[str] = None


class ExecutionResult(BaseModel):
    """What the graph executor reports once a run stops."""
    execution_id: str
    workflow_id: str
    status: ExecutionStatusEnum
    error_message: Optional[str] = None
    last_node_id: Optional[str] = None
    visited_nodes: List[str] = Field(default_factory=list)


class BackoffType(str, Enum):
    """Retry delay strategies for queued jobs."""
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class BackoffPolicy(BaseModel):
    """Delay between job attempts."""
    type: BackoffType = Field(BackoffType.EXPONENTIAL, description="Backoff strategy")
    delay: float = Field(2.0, ge=0, description="Base delay in seconds")
    max_delay: float = Field(300.0, ge=0, description="Upper bound on any single delay")

    def compute_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt, given how many attempts already ran."""
        if attempts_made <= 0:
            return 0.0
        if self.type == BackoffType.FIXED:
            delay = self.delay
        else:
            delay = self.delay * (2 ** (attempts_made - 1))
        return min(delay, self.max_delay)


class JobOptions(BaseModel):
    """Per-job queue options."""
    priority: int = Field(0, description="Lower values are served first")
    attempts: int = Field(3, ge=1, description="Maximum number of attempts")
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    delay: float = Field(0.0, ge=0, description="Seconds to wait before the first attempt")
    timeout: Optional[float] = Field(None, gt=0, description="Whole-job timeout in seconds")
    job_id: Optional[str] = Field(None, description="Caller supplied ID used for de-duplication")


class JobState(str, Enum):
    """Lifecycle states of a queued job."""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class RunJobPayload(BaseModel):
    """Payload of a job on the workflow-execution lane."""
    workflow_id: str
    execution_id: str
    variables: Dict[str, Any] = Field(default_factory=dict)


class NodeJobPayload(BaseModel):
    """Payload of a job on the node-execution lane."""
    execution_id: str
    node: NodeSpec
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_outputs: Dict[str, Any] = Field(default_factory=dict)


class QueueName(str, Enum):
    """Named job queue lanes."""
    WORKFLOW_EXECUTION = "workflow-execution"
    NODE_EXECUTION = "node-execution"
    EMAIL_SENDING = "email-sending"
    WEBHOOK_PROCESSING = "webhook-processing"
    FILE_PROCESSING = "file-processing"
    LLM_PROCESSING = "llm-processing"
