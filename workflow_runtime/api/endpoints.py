"""FastAPI REST and WebSocket endpoints for the workflow runtime."""

import json
from typing import Any, Dict, List, NoReturn, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.execution_store import ExecutionStore
from ..core.graph import WorkflowGraph
from ..core.job_queue import JobQueue
from ..core.logging import get_logger
from ..core.middleware import get_status_code_for_error
from ..core.node_registry import NodeRegistry
from ..core.notifier import EXECUTION_TOPIC, WORKFLOW_TOPIC, WebSocketNotifier
from ..core.run_service import RunService
from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    JobState,
    LogEntry,
    NodeExecutionRecord,
    ValidationResult,
    WorkflowDefinition,
    utcnow,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Set by the application factory at startup
_execution_store: Optional[ExecutionStore] = None
_run_service: Optional[RunService] = None
_job_queue: Optional[JobQueue] = None
_node_registry: Optional[NodeRegistry] = None
_websocket_notifier: Optional[WebSocketNotifier] = None


def init_dependencies(
    execution_store: ExecutionStore,
    run_service: RunService,
    job_queue: JobQueue,
    node_registry: NodeRegistry,
    websocket_notifier: Optional[WebSocketNotifier] = None
):
    """Initialize the global dependencies."""
    global _execution_store, _run_service, _job_queue, _node_registry, _websocket_notifier
    _execution_store = execution_store
    _run_service = run_service
    _job_queue = job_queue
    _node_registry = node_registry
    _websocket_notifier = websocket_notifier


def _require(component: Any, name: str) -> Any:
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{name} not initialized"
        )
    return component


def get_execution_store() -> ExecutionStore:
    return _require(_execution_store, "Execution store")


def get_run_service() -> RunService:
    return _require(_run_service, "Run service")


def get_job_queue() -> JobQueue:
    return _require(_job_queue, "Job queue")


def get_node_registry() -> NodeRegistry:
    return _require(_node_registry, "Node registry")


def _raise_http_error(error: WorkflowEngineError, action: str) -> NoReturn:
    status_code = get_status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Error while {action}: {error.message}")
    else:
        logger.warning(f"Rejected request while {action}: {error.message}")
    raise HTTPException(status_code=status_code, detail=create_error_response(error))


# Request/Response models

class SubmitExecutionRequest(BaseModel):
    """Request model for starting a workflow run."""
    workflow_id: str = Field(..., description="ID of the workflow to run")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Initial run variables")
    priority: Optional[int] = Field(None, description="Queue priority, lower served first")
    attempts: Optional[int] = Field(None, ge=1, description="Maximum attempts for the run job")
    delay: Optional[float] = Field(None, ge=0, description="Seconds to wait before starting")
    timeout: Optional[float] = Field(None, gt=0, description="Whole-run timeout in seconds")


class SubmitExecutionResponse(BaseModel):
    """Response model for a queued run."""
    execution_id: str = Field(..., description="Identifier of the execution")
    workflow_id: str = Field(..., description="Identifier of the workflow")
    status: ExecutionStatusEnum = Field(..., description="Initial execution status")
    message: str = Field(..., description="Success message")


class CancelExecutionResponse(BaseModel):
    """Response model for a cancellation request."""
    execution_id: str
    cancelled: bool
    status: ExecutionStatusEnum
    message: str


# Workflow definitions

@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow definition without storing it"
)
def validate_workflow(
    workflow: WorkflowDefinition,
    node_registry: NodeRegistry = Depends(get_node_registry)
) -> ValidationResult:
    return WorkflowGraph(workflow).validate(node_registry)


@router.get("/node-types", summary="List registered node types")
def list_node_types(node_registry: NodeRegistry = Depends(get_node_registry)) -> Dict[str, str]:
    return node_registry.list_handlers()


# Executions

@router.post(
    "/executions",
    response_model=SubmitExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue a workflow run"
)
def submit_execution(
    request: SubmitExecutionRequest,
    run_service: RunService = Depends(get_run_service)
) -> SubmitExecutionResponse:
    """
    Queue a run of a stored workflow.

    The run starts with status ``pending``; poll the execution or subscribe on
    the monitor WebSocket to follow it.
    """
    options = request.model_dump(include={"priority", "attempts", "delay", "timeout"}, exclude_none=True)
    try:
        record = run_service.submit_run(request.workflow_id, request.trigger_data, options)
    except WorkflowEngineError as e:
        _raise_http_error(e, f"submitting workflow {request.workflow_id}")

    return SubmitExecutionResponse(
        execution_id=record.id,
        workflow_id=record.workflow_id,
        status=record.status,
        message="Workflow execution queued"
    )


@router.get("/executions", response_model=List[ExecutionRecord], summary="List executions")
def list_executions(
    workflow_id: Optional[str] = Query(None, description="Filter by workflow ID"),
    execution_status: Optional[ExecutionStatusEnum] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=1000),
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> List[ExecutionRecord]:
    statuses = [execution_status] if execution_status else None
    try:
        return execution_store.list_executions(workflow_id=workflow_id, statuses=statuses, limit=limit)
    except WorkflowEngineError as e:
        _raise_http_error(e, "listing executions")


@router.get("/executions/{execution_id}", response_model=ExecutionRecord, summary="Get an execution")
def get_execution(
    execution_id: str,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> ExecutionRecord:
    try:
        return execution_store.get_execution(execution_id)
    except WorkflowEngineError as e:
        _raise_http_error(e, f"loading execution {execution_id}")


@router.get(
    "/executions/{execution_id}/nodes",
    response_model=List[NodeExecutionRecord],
    summary="Get the node records of an execution"
)
def get_execution_nodes(
    execution_id: str,
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> List[NodeExecutionRecord]:
    try:
        execution_store.get_execution(execution_id)
        return execution_store.get_node_executions(execution_id)
    except WorkflowEngineError as e:
        _raise_http_error(e, f"loading node records of {execution_id}")


@router.get(
    "/executions/{execution_id}/logs",
    response_model=List[LogEntry],
    summary="Get the log entries of an execution"
)
def get_execution_logs(
    execution_id: str,
    limit: Optional[int] = Query(None, ge=1, le=10000),
    execution_store: ExecutionStore = Depends(get_execution_store)
) -> List[LogEntry]:
    try:
        execution_store.get_execution(execution_id)
        return execution_store.get_logs(execution_id, limit=limit)
    except WorkflowEngineError as e:
        _raise_http_error(e, f"loading logs of {execution_id}")


@router.post(
    "/executions/{execution_id}/cancel",
    response_model=CancelExecutionResponse,
    summary="Cancel an execution"
)
def cancel_execution(
    execution_id: str,
    run_service: RunService = Depends(get_run_service)
) -> CancelExecutionResponse:
    """
    Request cancellation of a pending or running execution.

    A running execution stops before its next node. Cancelling a finished
    execution is not an error; ``cancelled`` is false in that case.
    """
    try:
        cancelled = run_service.cancel_run(execution_id)
        record = run_service.get_run(execution_id)
    except WorkflowEngineError as e:
        _raise_http_error(e, f"cancelling execution {execution_id}")

    if cancelled:
        message = f"Execution {execution_id} cancelled"
    else:
        message = f"Execution {execution_id} already {record.status.value}"
    return CancelExecutionResponse(
        execution_id=execution_id,
        cancelled=cancelled,
        status=record.status,
        message=message
    )


# Queues

def _require_lane(job_queue: JobQueue, queue_name: str) -> None:
    if queue_name not in job_queue.lanes:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "QueueNotFound", "message": f"Unknown queue: {queue_name}"}
        )


@router.get("/queues", summary="Get job counts per queue lane")
def get_queue_stats(job_queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Dict[str, Any]]:
    return job_queue.get_stats()


@router.post("/queues/{queue_name}/pause", summary="Pause a queue lane")
def pause_queue(queue_name: str, job_queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    _require_lane(job_queue, queue_name)
    job_queue.pause(queue_name)
    return {"queue": queue_name, "paused": True}


@router.post("/queues/{queue_name}/resume", summary="Resume a queue lane")
def resume_queue(queue_name: str, job_queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    _require_lane(job_queue, queue_name)
    job_queue.resume(queue_name)
    return {"queue": queue_name, "paused": False}


@router.post("/jobs/{job_id}/retry", summary="Retry a failed job")
def retry_job(job_id: str, job_queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    job = job_queue.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "JobNotFound", "message": f"Job not found: {job_id}"}
        )
    if job.state != JobState.FAILED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "JobNotFailed", "message": f"Job {job_id} is {job.state.value}, only failed jobs can be retried"}
        )
    return job_queue.retry_job(job_id).to_dict()


# WebSocket endpoint for real-time monitoring

@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint for real-time run monitoring.

    Client messages:
    {
        "action": "subscribe" | "unsubscribe" | "ping" | "get_status",
        "execution_id": "optional",
        "workflow_id": "optional"
    }

    Status events are sent as ``{"event_type": "status", ...StatusEvent}`` to
    every connection subscribed to the event's execution or workflow.
    """
    if not _websocket_notifier:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_notifier.connect(websocket)
        if connection_id is None:
            return

        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await _websocket_notifier.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": utcnow().isoformat()
                })
                continue

            action = message.get("action") if isinstance(message, dict) else None
            if action in ("subscribe", "unsubscribe"):
                if message.get("execution_id"):
                    kind, identifier = EXECUTION_TOPIC, str(message["execution_id"])
                elif message.get("workflow_id"):
                    kind, identifier = WORKFLOW_TOPIC, str(message["workflow_id"])
                else:
                    await _websocket_notifier.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"{action} requires execution_id or workflow_id",
                        "timestamp": utcnow().isoformat()
                    })
                    continue

                if action == "subscribe":
                    await _websocket_notifier.subscribe(connection_id, kind, identifier)
                elif await _websocket_notifier.unsubscribe(connection_id, kind, identifier):
                    await _websocket_notifier.send_to_connection(connection_id, {
                        "event_type": "unsubscribed",
                        f"{kind}_id": identifier,
                        "timestamp": utcnow().isoformat()
                    })

            elif action == "ping":
                await _websocket_notifier.send_to_connection(connection_id, {
                    "event_type": "pong",
                    "timestamp": utcnow().isoformat()
                })

            elif action == "get_status":
                await _websocket_notifier.send_to_connection(connection_id, {
                    "event_type": "status_info",
                    "data": _websocket_notifier.get_connection_info(),
                    "timestamp": utcnow().isoformat()
                })

            else:
                await _websocket_notifier.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": f"Unknown action: {action}",
                    "timestamp": utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    finally:
        if connection_id:
            await _websocket_notifier.disconnect(connection_id)


@router.get("/ws/connections", summary="Get WebSocket connection information")
async def get_websocket_connections() -> Dict[str, Any]:
    if not _websocket_notifier:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="WebSocket monitoring not available"
        )
    return {
        "websocket_monitoring": "active",
        "connection_info": _websocket_notifier.get_connection_info()
    }
