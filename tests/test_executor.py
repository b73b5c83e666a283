"""Tests for the graph executor."""

import pytest

from workflow_runtime.core.execution_context import ExecutionContext
from workflow_runtime.core.executor import GraphExecutor, RunAborted
from workflow_runtime.core.graph import NO_START_NODES_MESSAGE
from workflow_runtime.models.core import ExecutionStatusEnum, LogEventType, NodeExecutionStatusEnum, NodeResult

from conftest import make_workflow


def node_ids(records):
    return [record.node_id for record in records]


class TestLinearExecution:
    """Test straightforward runs."""

    def test_nodes_run_in_order(self, run_workflow, execution_store):
        definition = make_workflow(
            [("start", "manual", {}), ("wait", "delay", {"delay": 10}), ("end", "transform", {"inputData": {"a": 1}})],
            [("start", "wait"), ("wait", "end")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert result.visited_nodes == ["start", "wait", "end"]

        records = execution_store.get_node_executions(result.execution_id)
        assert node_ids(records) == ["start", "wait", "end"]
        assert all(record.status == NodeExecutionStatusEnum.COMPLETED for record in records)

        execution = execution_store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.last_node_id == "end"
        assert execution.started_at is not None
        assert execution.completed_at is not None
        assert execution.node_outputs["wait"]["delayed"] == 10
        assert [step["node_id"] for step in execution.execution_metadata["execution_path"]] == \
            ["start", "wait", "end"]

    def test_outputs_flow_between_nodes(self, run_workflow, execution_store):
        definition = make_workflow(
            [
                ("start", "manual", {}),
                ("shout", "transform", {"inputData": "{{name}}", "transformation": "uppercase"}),
                ("greet", "transform", {
                    "inputSource": "shout",
                    "mappingRules": {"greeting": "Hello {{node.shout.transformed_data}}"}
                }),
            ],
            [("start", "shout"), ("shout", "greet")]
        )

        result = run_workflow(definition, trigger_data={"name": "ada"})

        execution = execution_store.get_execution(result.execution_id)
        assert execution.node_outputs["shout"]["transformed_data"] == "ADA"
        assert execution.node_outputs["greet"]["transformed_data"] == {"greeting": "Hello ADA"}
        assert execution.variables == {"name": "ada"}

    def test_status_events_published(self, run_workflow, notifier):
        result = run_workflow(make_workflow([("start", "manual", {})]))

        run_events = [event for event in notifier.events if event.node_id is None]
        assert run_events[0].status == "running"
        assert run_events[-1].status == "completed"
        assert run_events[-1].progress == 100.0
        assert notifier.statuses("start") == ["running", "completed"]
        assert all(event.execution_id == result.execution_id for event in notifier.events)

    def test_execution_logs_written(self, run_workflow, execution_store):
        result = run_workflow(make_workflow([("start", "manual", {})]))

        event_types = [entry.event_type for entry in execution_store.get_logs(result.execution_id)]
        assert event_types == [
            LogEventType.WORKFLOW_QUEUED,
            LogEventType.WORKFLOW_START,
            LogEventType.NODE_START,
            LogEventType.NODE_COMPLETE,
            LogEventType.WORKFLOW_COMPLETE,
        ]

    def test_progress_callback(self, run_workflow):
        progress = []
        run_workflow(
            make_workflow(
                [("a", "manual", {}), ("b", "manual", {}), ("c", "manual", {}), ("d", "manual", {})],
                [("a", "b"), ("b", "c"), ("c", "d")]
            ),
            progress_callback=progress.append
        )

        assert [item["percent"] for item in progress] == [25.0, 50.0, 75.0, 100.0]
        assert progress[-1]["node_id"] == "d"


class TestTraversal:
    """Test depth-first traversal over branching graphs."""

    def test_diamond_runs_shared_node_per_path(self, run_workflow, execution_store):
        definition = make_workflow(
            [("A", "manual", {}), ("B", "manual", {}), ("C", "manual", {}), ("D", "manual", {})],
            [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.COMPLETED
        assert node_ids(execution_store.get_node_executions(result.execution_id)) == ["A", "B", "D", "C", "D"]

    def test_every_start_node_runs(self, run_workflow):
        definition = make_workflow(
            [("A", "manual", {}), ("B", "manual", {}), ("C", "manual", {})],
            [("A", "C")]
        )
        assert run_workflow(definition).visited_nodes == ["A", "C", "B"]

    def test_default_branching_follows_all_edges(self, run_workflow):
        result = run_workflow(self._branching_workflow(), trigger_data={"count": 10})
        assert result.visited_nodes == ["check", "big", "small"]

    def test_strict_branching_follows_matching_edge(self, run_workflow, registry, execution_store, notifier):
        strict = GraphExecutor(registry, execution_store, notifier=notifier, strict_condition_branching=True)

        result = run_workflow(self._branching_workflow(), trigger_data={"count": 10}, graph_executor=strict)
        assert result.visited_nodes == ["check", "big"]

        result = run_workflow(self._branching_workflow(), trigger_data={"count": 1}, graph_executor=strict)
        assert result.visited_nodes == ["check", "small"]

    @staticmethod
    def _branching_workflow():
        return make_workflow(
            [("check", "condition", {"condition": "count > 5"}), ("big", "manual", {}), ("small", "manual", {})],
            [
                {"source": "check", "target": "big", "branch": "true"},
                {"source": "check", "target": "small", "branch": "false"},
            ]
        )


class TestFailures:
    """Test configuration and node failures."""

    def test_no_start_node_fails_before_any_node(self, run_workflow, execution_store):
        definition = make_workflow([("A", "manual", {}), ("B", "manual", {})], [("A", "B"), ("B", "A")])

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_message == NO_START_NODES_MESSAGE
        assert execution_store.get_node_executions(result.execution_id) == []
        assert execution_store.get_execution(result.execution_id).error_message == NO_START_NODES_MESSAGE

    def test_cycle_fails_before_any_node(self, run_workflow, execution_store):
        definition = make_workflow(
            [("S", "manual", {}), ("A", "manual", {}), ("B", "manual", {})],
            [("S", "A"), ("A", "B"), ("B", "A")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.FAILED
        assert "Cycle detected" in result.error_message
        assert execution_store.get_node_executions(result.execution_id) == []

    def test_unregistered_type_fails_before_any_node(self, run_workflow, execution_store):
        result = run_workflow(make_workflow([("S", "manual", {}), ("X", "mystery", {})], [("S", "X")]))

        assert result.status == ExecutionStatusEnum.FAILED
        assert "mystery" in result.error_message
        assert execution_store.get_node_executions(result.execution_id) == []

    def test_node_error_fails_run(self, run_workflow, execution_store, notifier):
        definition = make_workflow(
            [("start", "manual", {}), ("bad", "fail", {}), ("after", "manual", {})],
            [("start", "bad"), ("bad", "after")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.FAILED
        assert result.error_message == "Node bad failed: boom"
        assert result.last_node_id == "bad"

        records = execution_store.get_node_executions(result.execution_id)
        assert node_ids(records) == ["start", "bad"]
        assert records[1].status == NodeExecutionStatusEnum.FAILED
        assert records[1].error_message == "boom"

        execution = execution_store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.last_node_id == "bad"
        assert notifier.statuses("bad") == ["running", "failed"]

    def test_continue_on_error(self, run_workflow, execution_store):
        definition = make_workflow(
            [
                ("start", "manual", {}),
                {"id": "bad", "type": "fail", "config": {"message": "flaky"}, "continueOnError": True},
                ("after", "transform", {"inputData": "{{node.bad.error}}"}),
            ],
            [("start", "bad"), ("bad", "after")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.COMPLETED
        records = execution_store.get_node_executions(result.execution_id)
        assert node_ids(records) == ["start", "bad", "after"]
        assert records[1].status == NodeExecutionStatusEnum.FAILED

        execution = execution_store.get_execution(result.execution_id)
        assert execution.node_outputs["bad"] == {"error": "flaky"}
        assert execution.node_outputs["after"]["transformed_data"] == "flaky"

    def test_reported_failure_does_not_fail_run(self, run_workflow, registry, execution_store):
        registry.register("remote", lambda config, context: NodeResult(success=False, error="remote down"))

        result = run_workflow(make_workflow([("call", "remote", {})]))

        assert result.status == ExecutionStatusEnum.COMPLETED
        execution = execution_store.get_execution(result.execution_id)
        assert execution.node_outputs["call"] == {"success": False, "error": "remote down"}


class TestCancellation:
    """Test cooperative cancellation and abandoned attempts."""

    def test_cancel_stops_at_next_node(self, run_workflow, registry, execution_store):
        def cancel_self(config, context):
            execution_store.cancel_execution(context.execution_id, "stop requested")
            return {"cancelled": True}

        registry.register("cancel_self", cancel_self)
        definition = make_workflow(
            [("first", "cancel_self", {}), ("second", "manual", {})],
            [("first", "second")]
        )

        result = run_workflow(definition)

        assert result.status == ExecutionStatusEnum.CANCELLED
        assert node_ids(execution_store.get_node_executions(result.execution_id)) == ["first"]
        execution = execution_store.get_execution(result.execution_id)
        assert execution.status == ExecutionStatusEnum.CANCELLED
        assert execution.error_message == "stop requested"

    def test_finished_execution_not_rerun(self, workflow_store, execution_store, executor):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = execution_store.create_execution(workflow.id)
        execution_store.cancel_execution(record.id)

        result = executor.execute(workflow, ExecutionContext(workflow.id, record.id))

        assert result.status == ExecutionStatusEnum.CANCELLED
        assert execution_store.get_node_executions(record.id) == []

    def test_abort_raises_before_next_node(self, run_workflow):
        with pytest.raises(RunAborted):
            run_workflow(make_workflow([("start", "manual", {})]), should_abort=lambda: True)
