"""Submission, cancellation and queue processing of workflow runs."""

from typing import Any, Dict, Optional, Union

from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    JobOptions,
    NodeJobPayload,
    NodeResult,
    NodeSpec,
    QueueName,
    RunJobPayload,
    StatusEvent,
)
from .exceptions import JobQueueError, NodeExecutionError, WorkflowEngineError
from .execution_context import ExecutionContext, infer_value_type
from .execution_store import ExecutionStore
from .executor import GraphExecutor
from .job_queue import Job, JobQueue
from .logging import get_logger, set_logging_context
from .node_registry import NodeRegistry
from .notifier import LoggingNotifier, Notifier
from .workflow_store import WorkflowStore

logger = get_logger(__name__)

RUN_JOB_NAME = "run"
NODE_JOB_NAME = "node"

# Node types whose handlers call out of the process, and the lane each one runs on
CONNECTOR_LANES: Dict[str, QueueName] = {
    "llm": QueueName.LLM_PROCESSING,
    "api": QueueName.WEBHOOK_PROCESSING,
    "communication": QueueName.EMAIL_SENDING,
    "file": QueueName.FILE_PROCESSING,
}

RECOVERABLE_STATUSES = (ExecutionStatusEnum.PENDING, ExecutionStatusEnum.RUNNING)


def run_job_id(execution_id: str) -> str:
    return f"run:{execution_id}"


class ConnectorCall:
    """One connector node's handler call, handed to that node type's lane."""

    def __init__(self, execution_id: str, node: NodeSpec, config: Dict[str, Any], context: ExecutionContext):
        self.execution_id = execution_id
        self.node = node
        self.config = config
        self.context = context


class RunService:
    """
    Turns run requests into queued jobs and queued jobs into executions.

    ``start`` registers the run, node and connector processors on the job
    queue and re-queues runs a previous process left pending or running;
    until then submitted runs stay queued.

    Connector nodes (see ``CONNECTOR_LANES``) execute as jobs on their own
    lane, so each lane's worker count caps how many of those calls are in
    flight across all runs. The run waits for the connector job before it
    moves to the next node.
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        execution_store: ExecutionStore,
        registry: NodeRegistry,
        job_queue: JobQueue,
        notifier: Optional[Notifier] = None,
        strict_condition_branching: bool = False,
        connector_lanes: Optional[Dict[str, QueueName]] = None
    ):
        self.workflow_store = workflow_store
        self.execution_store = execution_store
        self.registry = registry
        self.job_queue = job_queue
        self.notifier = notifier or LoggingNotifier()
        self.connector_lanes = dict(CONNECTOR_LANES if connector_lanes is None else connector_lanes)
        self.executor = GraphExecutor(
            registry,
            execution_store,
            notifier=self.notifier,
            strict_condition_branching=strict_condition_branching,
            node_dispatcher=self.dispatch_node
        )
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.job_queue.register_processor(QueueName.WORKFLOW_EXECUTION, self.process_run_job)
        self.job_queue.register_processor(QueueName.NODE_EXECUTION, self.process_node_job)
        for lane in self._connector_lane_names():
            self.job_queue.register_processor(lane, self.process_connector_job)
        self.job_queue.on("failed", self._on_run_failed, queue_name=QueueName.WORKFLOW_EXECUTION)
        self.job_queue.on("progress", self._on_run_progress, queue_name=QueueName.WORKFLOW_EXECUTION)
        self._started = True
        recovered = self.recover_runs()
        logger.info(f"Run service started ({recovered} unfinished runs re-queued)")

    def recover_runs(self) -> int:
        """
        Re-queue every execution left pending or running, for example by a
        process that stopped before its run jobs finished.

        Attempts already started count against the run's budget; a run with
        none left is marked failed. Returns the number of runs re-queued.
        """
        lane_attempts = self.job_queue.lanes[QueueName.WORKFLOW_EXECUTION.value].attempts
        records = self.execution_store.list_executions(statuses=RECOVERABLE_STATUSES, limit=None)

        requeued = 0
        for record in reversed(records):
            if self.job_queue.get_job(run_job_id(record.id)) is not None:
                continue

            remaining = (record.max_attempts or lane_attempts) - record.attempts
            if remaining <= 0:
                message = f"Run attempts exhausted ({record.attempts}) before the runtime restarted"
                if self.execution_store.finalize_execution(record.id, ExecutionStatusEnum.FAILED,
                                                           error_message=message):
                    logger.warning(f"Execution {record.id}: {message}")
                    self._publish(record.id, record.workflow_id, ExecutionStatusEnum.FAILED.value, message)
                continue

            payload = RunJobPayload(workflow_id=record.workflow_id, execution_id=record.id,
                                    variables=record.trigger_data)
            self.job_queue.enqueue(
                QueueName.WORKFLOW_EXECUTION,
                payload,
                {"job_id": run_job_id(record.id), "attempts": remaining},
                name=RUN_JOB_NAME
            )
            requeued += 1
            logger.info(f"Re-queued {record.status.value} execution {record.id} "
                        f"({record.attempts} attempts already made)")
        return requeued

    def submit_run(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
        options: Union[JobOptions, Dict[str, Any], None] = None
    ) -> ExecutionRecord:
        """
        Create a pending execution for a stored workflow and queue it.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            ExecutionContextError: If a trigger value is not a supported type
            JobQueueError: If the queue refuses the job
        """
        workflow = self.workflow_store.get_workflow(workflow_id)
        trigger_data = dict(trigger_data or {})
        for value in trigger_data.values():
            infer_value_type(value)

        if isinstance(options, JobOptions):
            job_options = options.model_dump(exclude_unset=True)
        else:
            job_options = dict(options or {})

        record = self.execution_store.create_execution(workflow.id, trigger_data,
                                                       max_attempts=job_options.get("attempts"))
        self._publish(record.id, workflow.id, ExecutionStatusEnum.PENDING.value, "Workflow execution queued")
        job_options["job_id"] = run_job_id(record.id)

        payload = RunJobPayload(workflow_id=workflow.id, execution_id=record.id, variables=trigger_data)
        try:
            self.job_queue.enqueue(QueueName.WORKFLOW_EXECUTION, payload, job_options, name=RUN_JOB_NAME)
        except JobQueueError as e:
            self.execution_store.finalize_execution(record.id, ExecutionStatusEnum.FAILED,
                                                    error_message=f"Failed to queue run: {e.message}")
            raise

        logger.info(f"Queued execution {record.id} for workflow {workflow.id}")
        return record

    def submit_node(
        self,
        execution_id: str,
        node: Union[NodeSpec, Dict[str, Any]],
        variables: Optional[Dict[str, Any]] = None,
        node_outputs: Optional[Dict[str, Any]] = None,
        options: Union[JobOptions, Dict[str, Any], None] = None
    ) -> Job:
        """Queue a single node of an existing execution on the node-execution lane."""
        self.execution_store.get_execution(execution_id)
        payload = NodeJobPayload(
            execution_id=execution_id,
            node=node if isinstance(node, NodeSpec) else NodeSpec.model_validate(node),
            variables=variables or {},
            node_outputs=node_outputs or {}
        )
        return self.job_queue.enqueue(QueueName.NODE_EXECUTION, payload, options, name=NODE_JOB_NAME)

    def cancel_run(self, execution_id: str, reason: str = "Cancelled by request") -> bool:
        """
        Request cancellation. The executor stops before its next node.

        Returns False when the run had already finished.
        """
        record = self.execution_store.get_execution(execution_id)
        if not self.execution_store.cancel_execution(execution_id, reason):
            logger.info(f"Execution {execution_id} is already {record.status.value}, not cancelling")
            return False

        logger.info(f"Cancelled execution {execution_id}: {reason}")
        self._publish(execution_id, record.workflow_id, ExecutionStatusEnum.CANCELLED.value, reason)
        return True

    def get_run(self, execution_id: str) -> ExecutionRecord:
        return self.execution_store.get_execution(execution_id)

    # Processors

    def process_run_job(self, job: Job) -> Dict[str, Any]:
        payload = job.payload if isinstance(job.payload, RunJobPayload) else RunJobPayload.model_validate(job.payload)
        abort_event = job.abort_event

        status = self.execution_store.get_status(payload.execution_id)
        if status.is_terminal:
            logger.info(f"Skipping run job for execution {payload.execution_id}: already {status.value}")
            return {"execution_id": payload.execution_id, "status": status.value, "skipped": True}

        attempts = self.execution_store.record_attempt(payload.execution_id)
        logger.debug(f"Run attempt {attempts} for execution {payload.execution_id}")
        workflow = self.workflow_store.get_workflow(payload.workflow_id)
        context = ExecutionContext(workflow.id, payload.execution_id)
        context.set_variables(payload.variables)

        result = self.executor.execute(
            workflow,
            context,
            progress_callback=job.update_progress,
            should_abort=abort_event.is_set
        )
        return result.model_dump(mode="json")

    def process_node_job(self, job: Job) -> Dict[str, Any]:
        """Run one node in isolation against the given variables and upstream outputs."""
        payload = job.payload if isinstance(job.payload, NodeJobPayload) else NodeJobPayload.model_validate(job.payload)
        node = payload.node
        record = self.execution_store.get_execution(payload.execution_id)

        context = ExecutionContext(record.workflow_id, payload.execution_id)
        context.set_variables(payload.variables)
        for node_id, output in payload.node_outputs.items():
            context.set_node_output(node_id, output)

        input_config = self.registry.resolve_config(node.type, node.config, context)
        record_id = self.execution_store.create_node_execution(payload.execution_id, node, input_config)
        try:
            result = self.dispatch_node(node, input_config, context)
        except Exception as e:
            self.execution_store.fail_node_execution(record_id, str(e))
            # Plain exceptions are retried; engine errors keep their own flag
            raise NodeExecutionError(
                f"Node {node.id} execution failed: {str(e)}",
                node_id=node.id,
                execution_id=payload.execution_id,
                recoverable=e.recoverable if isinstance(e, WorkflowEngineError) else True
            ) from e

        self.execution_store.complete_node_execution(record_id, result.output)
        return {
            "node_id": node.id,
            "output": result.output,
            "success": result.success,
            "error": result.error,
        }

    # Connector lanes

    def _connector_lane_names(self):
        """Configured connector lanes, each listed once."""
        return sorted({lane.value for lane in self.connector_lanes.values() if lane.value in self.job_queue.lanes})

    def connector_lane(self, node_type: str, config: Optional[Dict[str, Any]] = None) -> Optional[QueueName]:
        """The lane a node type's handler runs on, or None to run it on the run's own worker."""
        lane = self.connector_lanes.get(node_type)
        if lane == QueueName.EMAIL_SENDING and (config or {}).get("channel", "email") != "email":
            lane = QueueName.WEBHOOK_PROCESSING
        if lane is None or lane.value not in self.job_queue.lanes:
            return None
        return lane

    def dispatch_node(self, node: NodeSpec, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        """
        Run a node's handler, on its connector lane when it has one.

        Blocks until the handler finished. A connector job that fails for
        good raises the error of its last attempt.
        """
        lane = self.connector_lane(node.type, config) if self._started else None
        if lane is None:
            return self.registry.dispatch(node.type, config, context, resolve_templates=False)

        logger.debug(f"Handing node {node.id} ({node.type}) to queue {lane.value}")
        call = ConnectorCall(context.execution_id, node, config, context)
        return self.job_queue.submit_and_wait(lane, call, name=f"{node.type}:{node.id}")

    def process_connector_job(self, job: Job) -> NodeResult:
        call: ConnectorCall = job.payload
        set_logging_context(execution_id=call.execution_id, node_id=call.node.id)
        return self.registry.dispatch(call.node.type, call.config, call.context, resolve_templates=False)

    # Queue listeners

    def _on_run_failed(self, job: Job, error: Exception, final: bool) -> None:
        payload = job.payload
        if not isinstance(payload, RunJobPayload):
            return

        if not final:
            logger.warning(f"Run attempt {job.attempts_made} for execution {payload.execution_id} failed: {error}")
            return

        if self.execution_store.finalize_execution(payload.execution_id, ExecutionStatusEnum.FAILED,
                                                   error_message=str(error)):
            self._publish(payload.execution_id, payload.workflow_id, ExecutionStatusEnum.FAILED.value, str(error))

    def _on_run_progress(self, job: Job, progress: Any) -> None:
        payload = job.payload
        if not isinstance(payload, RunJobPayload) or not isinstance(progress, dict):
            return
        self.notifier.publish(StatusEvent(
            execution_id=payload.execution_id,
            workflow_id=payload.workflow_id,
            node_id=progress.get("node_id"),
            status=ExecutionStatusEnum.RUNNING.value,
            progress=progress.get("percent"),
        ))

    def _publish(self, execution_id: str, workflow_id: str, status: str, message: Optional[str] = None) -> None:
        self.notifier.publish(StatusEvent(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=status,
            message=message
        ))
