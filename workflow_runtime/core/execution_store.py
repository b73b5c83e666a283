"""Persistence of execution records, node execution records and execution logs."""

import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    LogEventType,
    NodeExecutionRecord,
    NodeExecutionStatusEnum,
    NodeSpec,
    utcnow,
)
from ..storage.database import get_db
from ..storage.models import ExecutionLogModel, ExecutionModel, NodeExecutionModel
from .error_recovery import STORAGE_RETRY, with_retry
from .exceptions import ExecutionNotFoundError, StorageError
from .execution_context import to_jsonable
from .logging import get_logger

logger = get_logger(__name__)

# Allowed source states for each target state
_TRANSITIONS = {
    ExecutionStatusEnum.RUNNING: (ExecutionStatusEnum.PENDING,),
    ExecutionStatusEnum.COMPLETED: (ExecutionStatusEnum.RUNNING,),
    ExecutionStatusEnum.FAILED: (ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING),
    ExecutionStatusEnum.CANCELLED: (ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING),
}

_FINAL_EVENTS = {
    ExecutionStatusEnum.COMPLETED: LogEventType.WORKFLOW_COMPLETE,
    ExecutionStatusEnum.FAILED: LogEventType.WORKFLOW_FAILED,
    ExecutionStatusEnum.CANCELLED: LogEventType.WORKFLOW_CANCELLED,
}


def _to_execution_record(model: ExecutionModel) -> ExecutionRecord:
    return ExecutionRecord(
        id=model.id,
        workflow_id=model.workflow_id,
        status=ExecutionStatusEnum(model.status),
        trigger_data=model.trigger_data or {},
        variables=model.variables,
        node_outputs=model.node_outputs,
        execution_metadata=model.execution_metadata,
        last_node_id=model.last_node_id,
        error_message=model.error_message,
        attempts=model.attempts or 0,
        max_attempts=model.max_attempts,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


def _to_node_record(model: NodeExecutionModel) -> NodeExecutionRecord:
    return NodeExecutionRecord(
        id=model.id,
        execution_id=model.execution_id,
        node_id=model.node_id,
        node_type=model.node_type,
        status=NodeExecutionStatusEnum(model.status),
        input_data=model.input_data,
        output_data=model.output_data,
        error_message=model.error_message,
        started_at=model.started_at,
        completed_at=model.completed_at,
    )


class ExecutionStore:
    """
    Database access for workflow runs.

    Status changes are conditional updates, so an execution moves
    pending -> running -> completed/failed/cancelled and a terminal status
    is never overwritten, even when two workers race.
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        if self._session_factory:
            return self._session_factory()
        return next(get_db())

    @contextmanager
    def _session_scope(self, operation: str):
        db = self._get_session()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error during {operation}: {str(e)}")
            raise StorageError(f"Failed to {operation.replace('_', ' ')}: {str(e)}", operation=operation)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _add_log(self, db: Session, execution_id: str, event_type: LogEventType, message: str,
                 node_id: Optional[str] = None, level: str = "info") -> None:
        db.add(ExecutionLogModel(
            execution_id=execution_id,
            node_id=node_id,
            level=level,
            event_type=event_type.value,
            message=message,
            timestamp=utcnow()
        ))

    # Execution records

    @with_retry(STORAGE_RETRY)
    def create_execution(self, workflow_id: str, trigger_data: Optional[Dict[str, Any]] = None,
                         execution_id: Optional[str] = None,
                         max_attempts: Optional[int] = None) -> ExecutionRecord:
        """Create a pending execution record for a queued run."""
        execution_id = execution_id or str(uuid.uuid4())
        with self._session_scope("create_execution") as db:
            model = ExecutionModel(
                id=execution_id,
                workflow_id=workflow_id,
                status=ExecutionStatusEnum.PENDING.value,
                trigger_data=to_jsonable(trigger_data or {}),
                attempts=0,
                max_attempts=max_attempts,
                created_at=utcnow()
            )
            db.add(model)
            self._add_log(db, execution_id, LogEventType.WORKFLOW_QUEUED,
                          f"Workflow {workflow_id} queued for execution")
            db.flush()
            record = _to_execution_record(model)

        logger.info(f"Created execution {execution_id} for workflow {workflow_id}")
        return record

    def _transition(self, execution_id: str, target: ExecutionStatusEnum, values: Dict[str, Any],
                    message: str, level: str = "info", node_id: Optional[str] = None) -> bool:
        with self._session_scope(f"mark_execution_{target.value}") as db:
            updated = (
                db.query(ExecutionModel)
                .filter(
                    ExecutionModel.id == execution_id,
                    ExecutionModel.status.in_([s.value for s in _TRANSITIONS[target]])
                )
                .update({**values, "status": target.value}, synchronize_session=False)
            )
            if updated:
                event_type = _FINAL_EVENTS.get(target, LogEventType.WORKFLOW_START)
                self._add_log(db, execution_id, event_type, message, node_id=node_id, level=level)

        if not updated:
            logger.debug(f"Execution {execution_id} not moved to {target.value}: not in an allowed state")
        return bool(updated)

    @with_retry(STORAGE_RETRY)
    def mark_running(self, execution_id: str) -> bool:
        """Move a pending execution to running. False if it is no longer pending."""
        return self._transition(
            execution_id,
            ExecutionStatusEnum.RUNNING,
            {"started_at": utcnow()},
            f"Workflow execution {execution_id} started"
        )

    @with_retry(STORAGE_RETRY)
    def record_attempt(self, execution_id: str) -> int:
        """Count one more run attempt for an execution and return the new total."""
        with self._session_scope("record_attempt") as db:
            updated = (
                db.query(ExecutionModel)
                .filter(ExecutionModel.id == execution_id)
                .update({"attempts": ExecutionModel.attempts + 1}, synchronize_session=False)
            )
            if not updated:
                raise ExecutionNotFoundError(execution_id)
            attempts = db.query(ExecutionModel.attempts).filter(ExecutionModel.id == execution_id).scalar()
        return attempts

    @with_retry(STORAGE_RETRY)
    def finalize_execution(
        self,
        execution_id: str,
        status: ExecutionStatusEnum,
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None,
        execution_metadata: Optional[Dict[str, Any]] = None,
        last_node_id: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> bool:
        """
        Write a terminal status with the run's final snapshots.

        Returns False without writing anything when the execution already
        reached a terminal status.
        """
        status = ExecutionStatusEnum(status)
        if not status.is_terminal:
            raise ValueError(f"finalize_execution requires a terminal status, got {status.value}")

        values: Dict[str, Any] = {"completed_at": utcnow()}
        if variables is not None:
            values["variables"] = to_jsonable(variables)
        if node_outputs is not None:
            values["node_outputs"] = to_jsonable(node_outputs)
        if execution_metadata is not None:
            values["execution_metadata"] = to_jsonable(execution_metadata)
        if last_node_id is not None:
            values["last_node_id"] = last_node_id
        if error_message is not None:
            values["error_message"] = error_message

        if status == ExecutionStatusEnum.COMPLETED:
            message = f"Workflow execution {execution_id} completed"
        elif status == ExecutionStatusEnum.CANCELLED:
            message = f"Workflow execution {execution_id} cancelled"
        else:
            message = f"Workflow execution failed: {error_message}"

        return self._transition(
            execution_id,
            status,
            values,
            message,
            level="error" if status == ExecutionStatusEnum.FAILED else "info",
            node_id=last_node_id if status == ExecutionStatusEnum.FAILED else None
        )

    @with_retry(STORAGE_RETRY)
    def cancel_execution(self, execution_id: str, reason: str = "Cancelled by request") -> bool:
        return self._transition(
            execution_id,
            ExecutionStatusEnum.CANCELLED,
            {"completed_at": utcnow(), "error_message": reason},
            f"Workflow execution {execution_id} cancelled: {reason}"
        )

    @with_retry(STORAGE_RETRY)
    def get_execution(self, execution_id: str) -> ExecutionRecord:
        with self._session_scope("get_execution") as db:
            model = db.query(ExecutionModel).filter(ExecutionModel.id == execution_id).first()
            if model is None:
                raise ExecutionNotFoundError(execution_id)
            return _to_execution_record(model)

    def get_status(self, execution_id: str) -> ExecutionStatusEnum:
        return self.get_execution(execution_id).status

    @with_retry(STORAGE_RETRY)
    def list_executions(self, workflow_id: Optional[str] = None,
                        statuses: Optional[Iterable[ExecutionStatusEnum]] = None,
                        limit: Optional[int] = 50) -> List[ExecutionRecord]:
        with self._session_scope("list_executions") as db:
            query = db.query(ExecutionModel)
            if workflow_id:
                query = query.filter(ExecutionModel.workflow_id == workflow_id)
            if statuses:
                query = query.filter(ExecutionModel.status.in_([ExecutionStatusEnum(s).value for s in statuses]))
            query = query.order_by(ExecutionModel.created_at.desc())
            if limit is not None:
                query = query.limit(limit)
            models = query.all()
            return [_to_execution_record(model) for model in models]

    # Node execution records

    @with_retry(STORAGE_RETRY)
    def create_node_execution(self, execution_id: str, node: NodeSpec,
                              input_data: Optional[Dict[str, Any]] = None) -> int:
        """Insert a running NodeExecutionRecord and return its ID."""
        with self._session_scope("create_node_execution") as db:
            model = NodeExecutionModel(
                execution_id=execution_id,
                node_id=node.id,
                node_type=node.type,
                status=NodeExecutionStatusEnum.RUNNING.value,
                input_data=to_jsonable(input_data or {}),
                started_at=utcnow()
            )
            db.add(model)
            self._add_log(db, execution_id, LogEventType.NODE_START,
                          f"Starting node execution: {node.id}", node_id=node.id)
            db.flush()
            return model.id

    @with_retry(STORAGE_RETRY)
    def complete_node_execution(self, node_execution_id: int, output: Any) -> None:
        with self._session_scope("complete_node_execution") as db:
            model = db.get(NodeExecutionModel, node_execution_id)
            if model is None:
                raise StorageError(f"Node execution {node_execution_id} not found",
                                   operation="complete_node_execution")
            model.status = NodeExecutionStatusEnum.COMPLETED.value
            model.output_data = to_jsonable(output)
            model.completed_at = utcnow()
            self._add_log(db, model.execution_id, LogEventType.NODE_COMPLETE,
                          f"Node execution completed: {model.node_id}", node_id=model.node_id)

    @with_retry(STORAGE_RETRY)
    def fail_node_execution(self, node_execution_id: int, error_message: str, output: Any = None) -> None:
        with self._session_scope("fail_node_execution") as db:
            model = db.get(NodeExecutionModel, node_execution_id)
            if model is None:
                raise StorageError(f"Node execution {node_execution_id} not found",
                                   operation="fail_node_execution")
            model.status = NodeExecutionStatusEnum.FAILED.value
            model.error_message = error_message
            if output is not None:
                model.output_data = to_jsonable(output)
            model.completed_at = utcnow()
            self._add_log(db, model.execution_id, LogEventType.NODE_ERROR,
                          f"Node execution failed: {error_message}", node_id=model.node_id, level="error")

    @with_retry(STORAGE_RETRY)
    def get_node_executions(self, execution_id: str) -> List[NodeExecutionRecord]:
        """Node records of a run, in the order the nodes were visited."""
        with self._session_scope("get_node_executions") as db:
            models = (
                db.query(NodeExecutionModel)
                .filter(NodeExecutionModel.execution_id == execution_id)
                .order_by(NodeExecutionModel.id)
                .all()
            )
            return [_to_node_record(model) for model in models]

    # Logs

    @with_retry(STORAGE_RETRY)
    def log_event(self, execution_id: str, event_type: LogEventType, message: str,
                  node_id: Optional[str] = None, level: str = "info") -> None:
        with self._session_scope("log_event") as db:
            self._add_log(db, execution_id, LogEventType(event_type), message, node_id=node_id, level=level)

    @with_retry(STORAGE_RETRY)
    def get_logs(self, execution_id: str, limit: Optional[int] = None) -> List[LogEntry]:
        with self._session_scope("get_logs") as db:
            query = (
                db.query(ExecutionLogModel)
                .filter(ExecutionLogModel.execution_id == execution_id)
                .order_by(ExecutionLogModel.id)
            )
            if limit:
                query = query.limit(limit)
            return [
                LogEntry(
                    timestamp=model.timestamp,
                    execution_id=model.execution_id,
                    node_id=model.node_id,
                    level=model.level,
                    event_type=LogEventType(model.event_type),
                    message=model.message
                )
                for model in query.all()
            ]
