"""Graph executor: walks a workflow depth-first and runs each node through the registry."""

import time
from typing import Any, Callable, Dict, List, Optional

from ..models.core import (
    EdgeSpec,
    ExecutionResult,
    ExecutionStatusEnum,
    NodeExecutionStatusEnum,
    NodeResult,
    NodeSpec,
    StatusEvent,
    WorkflowDefinition,
)
from .exceptions import ExecutionEngineError, NodeExecutionError, WorkflowConfigurationError
from .execution_context import ExecutionContext
from .execution_store import ExecutionStore
from .graph import WorkflowGraph
from .logging import clear_logging_context, get_logger, set_logging_context
from .node_registry import NodeRegistry
from .notifier import LoggingNotifier, Notifier

logger = get_logger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]
NodeDispatcher = Callable[[NodeSpec, Dict[str, Any], ExecutionContext], NodeResult]


class RunAborted(ExecutionEngineError):
    """Raised inside an abandoned attempt (for example after a job timeout) to stop traversal."""


class GraphExecutor:
    """
    Executes one workflow run against its ExecutionContext.

    Nodes run strictly one at a time. Starting from every node without an
    incoming edge, traversal is depth-first in edge order; a node reachable
    through several paths runs once per path. Before each node the run's
    stored status is checked so a cancellation takes effect at the next node
    boundary.

    Handlers run through ``node_dispatcher`` when one is given, which lets
    the run service hand connector nodes to their own queue lanes; the
    traversal still waits for each node before moving on.
    """

    def __init__(
        self,
        registry: NodeRegistry,
        execution_store: ExecutionStore,
        notifier: Optional[Notifier] = None,
        strict_condition_branching: bool = False,
        node_dispatcher: Optional[NodeDispatcher] = None
    ):
        self.registry = registry
        self.execution_store = execution_store
        self.notifier = notifier or LoggingNotifier()
        self.strict_condition_branching = strict_condition_branching
        self.node_dispatcher = node_dispatcher or self._dispatch

    def execute(
        self,
        workflow: WorkflowDefinition,
        context: ExecutionContext,
        progress_callback: Optional[ProgressCallback] = None,
        should_abort: Optional[Callable[[], bool]] = None
    ) -> ExecutionResult:
        """
        Run the workflow to a terminal status.

        Configuration problems (no start node, cycle, unknown node type) fail
        the run before any node executes. Node failures fail the run unless
        the node sets ``continue_on_error``. Storage errors propagate so the
        queue can retry the job.
        """
        execution_id = context.execution_id
        workflow_id = workflow.id or context.workflow_id
        set_logging_context(execution_id=execution_id, workflow_id=workflow_id)

        try:
            if not self.execution_store.mark_running(execution_id):
                status = self.execution_store.get_status(execution_id)
                if status.is_terminal:
                    logger.info(f"Execution {execution_id} is already {status.value}, nothing to run")
                    return ExecutionResult(execution_id=execution_id, workflow_id=workflow_id, status=status)
                logger.warning(f"Execution {execution_id} was already running, restarting traversal")

            self._publish(context, workflow_id, ExecutionStatusEnum.RUNNING.value, progress=0.0,
                          message="Workflow execution started")

            graph = WorkflowGraph(workflow)
            try:
                graph.ensure_executable(self.registry)
            except WorkflowConfigurationError as e:
                logger.error(f"Workflow {workflow_id} cannot run: {e.message}")
                return self._finish(context, workflow_id, ExecutionStatusEnum.FAILED, [], None, e.message)

            return self._traverse(graph, context, workflow_id, progress_callback, should_abort)
        finally:
            clear_logging_context()

    def _traverse(
        self,
        graph: WorkflowGraph,
        context: ExecutionContext,
        workflow_id: str,
        progress_callback: Optional[ProgressCallback],
        should_abort: Optional[Callable[[], bool]]
    ) -> ExecutionResult:
        execution_id = context.execution_id
        total = len(graph)
        visited: List[str] = []
        last_node_id: Optional[str] = None

        # Successors are pushed in reverse so they pop in edge order
        stack: List[NodeSpec] = list(reversed(graph.start_nodes()))

        while stack:
            node = stack.pop()

            if should_abort is not None and should_abort():
                raise RunAborted(f"Attempt for execution {execution_id} aborted", execution_id=execution_id)

            status = self.execution_store.get_status(execution_id)
            if status.is_terminal:
                logger.info(f"Execution {execution_id} is {status.value}, stopping before node {node.id}")
                self._publish(context, workflow_id, status.value, message=f"Stopped before node {node.id}")
                return ExecutionResult(
                    execution_id=execution_id,
                    workflow_id=workflow_id,
                    status=status,
                    last_node_id=last_node_id,
                    visited_nodes=visited
                )

            last_node_id = node.id
            error = self._run_node(node, context, workflow_id)
            visited.append(node.id)
            self._report_progress(context, workflow_id, node, visited, total, progress_callback)

            if error is not None and not node.continue_on_error:
                return self._finish(
                    context, workflow_id, ExecutionStatusEnum.FAILED, visited, node.id,
                    f"Node {node.id} failed: {error}"
                )

            for edge in reversed(graph.outgoing_edges(node.id)):
                if self._should_follow(node, edge, context):
                    stack.append(graph.get_node(edge.target))

        return self._finish(context, workflow_id, ExecutionStatusEnum.COMPLETED, visited, last_node_id, None)

    def _run_node(self, node: NodeSpec, context: ExecutionContext, workflow_id: str) -> Optional[str]:
        """Execute one node. Returns the error message when its handler raised."""
        execution_id = context.execution_id
        set_logging_context(node_id=node.id)
        context.update_metadata(node.id)

        input_config = self.registry.resolve_config(node.type, node.config, context)
        record_id = self.execution_store.create_node_execution(execution_id, node, input_config)
        self._publish(context, workflow_id, NodeExecutionStatusEnum.RUNNING.value, node_id=node.id)
        logger.debug(f"Executing node {node.id} ({node.type})")

        start_time = time.time()
        try:
            result = self.node_dispatcher(node, input_config, context)
        except Exception as e:
            failure = NodeExecutionError(
                f"Node {node.id} execution failed: {str(e)}",
                node_id=node.id,
                execution_id=execution_id,
                execution_time=round(time.time() - start_time, 3)
            )
            logger.error(failure.message, exc_info=not isinstance(e, (NodeExecutionError, WorkflowConfigurationError)))
            error_message = str(e)

            if node.continue_on_error:
                context.set_node_output(node.id, {"error": error_message})
            self.execution_store.fail_node_execution(record_id, error_message)
            self._publish(context, workflow_id, NodeExecutionStatusEnum.FAILED.value, node_id=node.id,
                          message=error_message)
            return error_message

        output = result.output
        if not result.success:
            logger.warning(f"Node {node.id} reported failure: {result.error}")
            if output is None:
                output = {"success": False, "error": result.error}

        context.set_node_output(node.id, output)
        self.execution_store.complete_node_execution(record_id, output)
        self._publish(context, workflow_id, NodeExecutionStatusEnum.COMPLETED.value, node_id=node.id,
                      message=result.error)
        return None

    def _dispatch(self, node: NodeSpec, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        return self.registry.dispatch(node.type, config, context, resolve_templates=False)

    def _should_follow(self, node: NodeSpec, edge: EdgeSpec, context: ExecutionContext) -> bool:
        """Every edge is followed unless strict branching filters a labelled edge."""
        if not self.strict_condition_branching or edge.branch is None:
            return True
        output = context.get_node_output(node.id)
        branch = output.get("branch") if isinstance(output, dict) else None
        if branch is None:
            return True
        return edge.branch == str(branch).lower()

    def _report_progress(self, context: ExecutionContext, workflow_id: str, node: NodeSpec,
                         visited: List[str], total: int,
                         progress_callback: Optional[ProgressCallback]) -> None:
        percent = min(100.0, round(len(visited) / total * 100, 2)) if total else 100.0
        progress = {
            "execution_id": context.execution_id,
            "node_id": node.id,
            "visited": len(visited),
            "total": total,
            "percent": percent,
        }
        if progress_callback is not None:
            try:
                progress_callback(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed for execution {context.execution_id}: {str(e)}")

    def _finish(self, context: ExecutionContext, workflow_id: str, status: ExecutionStatusEnum,
                visited: List[str], last_node_id: Optional[str],
                error_message: Optional[str]) -> ExecutionResult:
        execution_id = context.execution_id
        written = self.execution_store.finalize_execution(
            execution_id,
            status,
            variables=context.variable_values(),
            node_outputs=context.node_output_values(),
            execution_metadata=context.to_record()["metadata"],
            last_node_id=last_node_id,
            error_message=error_message
        )
        if not written:
            status = self.execution_store.get_status(execution_id)
            logger.info(f"Execution {execution_id} already finished as {status.value}")
            error_message = None
        elif status == ExecutionStatusEnum.COMPLETED:
            logger.info(f"Workflow execution completed: {execution_id} ({len(visited)} nodes)")
        else:
            logger.error(f"Workflow execution failed: {execution_id}: {error_message}")

        self._publish(context, workflow_id, status.value, progress=100.0, message=error_message)
        return ExecutionResult(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=status,
            error_message=error_message,
            last_node_id=last_node_id,
            visited_nodes=visited
        )

    def _publish(self, context: ExecutionContext, workflow_id: str, status: str,
                 node_id: Optional[str] = None, progress: Optional[float] = None,
                 message: Optional[str] = None) -> None:
        self.notifier.publish(StatusEvent(
            execution_id=context.execution_id,
            workflow_id=workflow_id,
            node_id=node_id,
            status=status,
            progress=progress,
            message=message
        ))
