"""Tests for queued workflow runs through the run service."""

import threading
import time
import pytest

from workflow_runtime.config import get_testing_config
from workflow_runtime.core.exceptions import ExecutionContextError, ExecutionNotFoundError, WorkflowNotFoundError
from workflow_runtime.core.job_queue import JobQueue
from workflow_runtime.core.run_service import RunService, run_job_id
from workflow_runtime.models.core import ExecutionStatusEnum, JobState, NodeExecutionStatusEnum, QueueName
from workflow_runtime.nodes import LLMHandler

from conftest import make_workflow


@pytest.fixture
def run_service(workflow_store, execution_store, registry, job_queue, notifier):
    return RunService(workflow_store, execution_store, registry, job_queue, notifier=notifier)


@pytest.fixture
def started_service(run_service):
    run_service.start()
    return run_service


def wait_for_run(service, execution_id, timeout=10):
    job = service.job_queue.get_job(run_job_id(execution_id))
    assert job is not None
    assert job.wait(timeout)
    return job


class TestSubmitRun:
    """Test queueing and processing whole runs."""

    def test_run_completes(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow(
            [("start", "manual", {}), ("greet", "transform", {"inputData": "{{name}}", "transformation": "uppercase"})],
            [("start", "greet")]
        ))

        record = started_service.submit_run(workflow.id, {"name": "ada"})
        assert record.status == ExecutionStatusEnum.PENDING
        assert record.trigger_data == {"name": "ada"}

        job = wait_for_run(started_service, record.id)

        assert job.state == JobState.COMPLETED
        assert job.result["status"] == "completed"
        execution = execution_store.get_execution(record.id)
        assert execution.status == ExecutionStatusEnum.COMPLETED
        assert execution.node_outputs["greet"]["transformed_data"] == "ADA"
        assert [r.node_id for r in execution_store.get_node_executions(record.id)] == ["start", "greet"]

    def test_status_events(self, started_service, workflow_store, notifier):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))

        record = started_service.submit_run(workflow.id)
        wait_for_run(started_service, record.id)

        run_statuses = [event.status for event in notifier.events if event.node_id is None]
        assert run_statuses[0] == "pending"
        assert run_statuses[-1] == "completed"
        assert any(
            event.status == "running" and event.node_id == "start" and event.progress == 100.0
            for event in notifier.events
        )

    def test_failed_node_fails_run(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow([("bad", "fail", {})]))

        record = started_service.submit_run(workflow.id)
        job = wait_for_run(started_service, record.id)

        assert job.state == JobState.COMPLETED
        execution = execution_store.get_execution(record.id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert execution.error_message == "Node bad failed: boom"

    def test_unknown_workflow(self, started_service, execution_store):
        with pytest.raises(WorkflowNotFoundError):
            started_service.submit_run("missing")
        assert execution_store.list_executions() == []

    def test_unsupported_trigger_value(self, started_service, workflow_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        with pytest.raises(ExecutionContextError):
            started_service.submit_run(workflow.id, {"handle": object()})

    def test_job_options_forwarded(self, run_service, workflow_store, job_queue):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))

        record = run_service.submit_run(workflow.id, options={"priority": 1, "attempts": 5})

        job = job_queue.get_job(run_job_id(record.id))
        assert job.options.priority == 1
        assert job.options.attempts == 5
        assert job.name == "run"

    def test_run_timeout_fails_execution(self, started_service, workflow_store, execution_store, registry):
        release = threading.Event()
        registry.register("slow", lambda config, context: release.wait(5))
        workflow = workflow_store.save_workflow(make_workflow([("wait", "slow", {})]))

        record = started_service.submit_run(workflow.id, options={"timeout": 0.2, "attempts": 1})
        try:
            job = wait_for_run(started_service, record.id)

            assert job.state == JobState.FAILED
            execution = execution_store.get_execution(record.id)
            assert execution.status == ExecutionStatusEnum.FAILED
            assert "timed out" in execution.error_message
        finally:
            release.set()
            # Let the abandoned attempt finish its writes before the database is torn down
            deadline = time.time() + 5
            while time.time() < deadline and any(
                r.status == NodeExecutionStatusEnum.RUNNING for r in execution_store.get_node_executions(record.id)
            ):
                time.sleep(0.05)
            time.sleep(0.1)


class TestCancelRun:
    """Test cancellation through the run service."""

    def test_cancel_queued_run(self, run_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = run_service.submit_run(workflow.id)

        assert run_service.cancel_run(record.id, "not needed")
        run_service.start()
        job = wait_for_run(run_service, record.id)

        assert job.result["skipped"] is True
        assert execution_store.get_status(record.id) == ExecutionStatusEnum.CANCELLED
        assert execution_store.get_node_executions(record.id) == []

    def test_cancel_finished_run(self, started_service, workflow_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = started_service.submit_run(workflow.id)
        wait_for_run(started_service, record.id)

        assert not started_service.cancel_run(record.id)
        assert started_service.get_run(record.id).status == ExecutionStatusEnum.COMPLETED

    def test_cancel_unknown_run(self, started_service):
        with pytest.raises(ExecutionNotFoundError):
            started_service.cancel_run("missing")


class TestSubmitNode:
    """Test single-node jobs on the node-execution lane."""

    def test_node_job(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = execution_store.create_execution(workflow.id)

        job = started_service.submit_node(
            record.id,
            {"id": "greet", "type": "transform", "config": {"inputSource": "start", "mappingRules": {"who": "name"}}},
            variables={"unused": 1},
            node_outputs={"start": {"name": "ada"}}
        )

        assert job.wait(10)
        assert job.state == JobState.COMPLETED
        assert job.result["output"]["transformed_data"] == {"who": "ada"}
        node_records = execution_store.get_node_executions(record.id)
        assert [r.node_id for r in node_records] == ["greet"]
        assert node_records[0].status == NodeExecutionStatusEnum.COMPLETED

    def test_failing_node_job(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = execution_store.create_execution(workflow.id)

        job = started_service.submit_node(record.id, {"id": "bad", "type": "fail"}, options={"attempts": 1})

        assert job.wait(10)
        assert job.state == JobState.FAILED
        assert "boom" in job.failed_reason
        assert execution_store.get_node_executions(record.id)[0].status == NodeExecutionStatusEnum.FAILED

    def test_unknown_execution(self, started_service):
        with pytest.raises(ExecutionNotFoundError):
            started_service.submit_node("missing", {"id": "a", "type": "manual"})


def queue_with(**lane_updates):
    """Testing lanes with per-lane overrides, keyed by lane name with underscores."""
    lanes = get_testing_config().lanes
    for key, update in lane_updates.items():
        name = key.replace("_", "-")
        lanes[name] = lanes[name].model_copy(update=update)
    return JobQueue(lanes)


class ConcurrentCalls:
    """Records the peak number of overlapping calls and the threads they ran on."""

    def __init__(self, seconds):
        self.seconds = seconds
        self.lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.threads = []

    def __call__(self, *args, **kwargs):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.threads.append(threading.current_thread().name)
        try:
            time.sleep(self.seconds)
        finally:
            with self.lock:
                self.active -= 1
        return {"response": "ok", "tokens": 1}


class TestConnectorLanes:
    """Test that connector nodes run on their own lanes."""

    def test_llm_lane_caps_parallel_calls(self, workflow_store, execution_store, registry, notifier):
        calls = ConcurrentCalls(0.2)
        registry.register("llm", LLMHandler(client=calls), replace=True)
        job_queue = queue_with(workflow_execution={"concurrency": 5}, llm_processing={"concurrency": 2})
        service = RunService(workflow_store, execution_store, registry, job_queue, notifier=notifier)
        try:
            service.start()
            workflow = workflow_store.save_workflow(make_workflow([("ask", "llm", {"prompt": "hi"})]))

            records = [service.submit_run(workflow.id) for _ in range(5)]
            for record in records:
                wait_for_run(service, record.id)

            assert all(execution_store.get_status(r.id) == ExecutionStatusEnum.COMPLETED for r in records)
            assert calls.peak == 2
            assert all(name.startswith("llm-processing") for name in calls.threads)
            assert job_queue.get_stats(QueueName.LLM_PROCESSING)["llm-processing"]["completed"] == 5
        finally:
            job_queue.shutdown(wait=True, timeout=5.0)

    def test_email_goes_through_email_lane(self, started_service, workflow_store, execution_store, sent_messages):
        workflow = workflow_store.save_workflow(make_workflow(
            [("notify", "communication", {"channel": "email", "to": "ops@example.com", "message": "hi {{name}}"})]
        ))

        record = started_service.submit_run(workflow.id, {"name": "ada"})
        wait_for_run(started_service, record.id)

        assert execution_store.get_status(record.id) == ExecutionStatusEnum.COMPLETED
        assert sent_messages == [{"to": "ops@example.com", "message": "hi ada"}]
        stats = started_service.job_queue.get_stats()
        assert stats["email-sending"]["completed"] == 1
        assert stats["email-sending"]["workers"] == 2

    def test_lane_routing(self, run_service):
        assert run_service.connector_lane("llm") == QueueName.LLM_PROCESSING
        assert run_service.connector_lane("api") == QueueName.WEBHOOK_PROCESSING
        assert run_service.connector_lane("communication", {"channel": "email"}) == QueueName.EMAIL_SENDING
        assert run_service.connector_lane("communication", {"channel": "slack"}) == QueueName.WEBHOOK_PROCESSING
        assert run_service.connector_lane("transform") is None

    def test_connector_error_fails_node(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow(
            [("notify", "communication", {"channel": "pager", "message": "hi"})]
        ))

        record = started_service.submit_run(workflow.id)
        wait_for_run(started_service, record.id)

        execution = execution_store.get_execution(record.id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert "No sender configured" in execution.error_message


class TestRunAttempts:
    """Test that a run never has two traversals at once."""

    def test_timed_out_attempt_finishes_before_retry(self, workflow_store, execution_store, registry, notifier):
        calls = ConcurrentCalls(0.4)
        registry.register("slow", lambda config, context: calls())
        job_queue = queue_with(workflow_execution={"timeout": 0.2, "attempts": 2})
        service = RunService(workflow_store, execution_store, registry, job_queue, notifier=notifier)
        try:
            service.start()
            workflow = workflow_store.save_workflow(make_workflow(
                [("a", "slow", {}), ("b", "slow", {})], [("a", "b")]
            ))

            record = service.submit_run(workflow.id)
            job = wait_for_run(service, record.id)

            assert job.state == JobState.FAILED
            assert job.attempts_made == 2
            # Let the last abandoned attempt reach its next node boundary
            time.sleep(0.6)
            assert calls.peak == 1
            assert execution_store.get_execution(record.id).attempts == 2
            assert execution_store.get_status(record.id) == ExecutionStatusEnum.FAILED
        finally:
            job_queue.shutdown(wait=True, timeout=5.0)


class TestRecovery:
    """Test re-queueing runs left unfinished by a previous process."""

    def test_pending_run_resumes_after_restart(self, workflow_store, execution_store, registry, notifier):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        first_queue = JobQueue(get_testing_config().lanes)
        record = RunService(workflow_store, execution_store, registry, first_queue).submit_run(workflow.id)
        first_queue.shutdown(wait=True, timeout=5.0)
        assert execution_store.get_status(record.id) == ExecutionStatusEnum.PENDING

        second_queue = JobQueue(get_testing_config().lanes)
        service = RunService(workflow_store, execution_store, registry, second_queue, notifier=notifier)
        try:
            service.start()
            wait_for_run(service, record.id)

            assert execution_store.get_status(record.id) == ExecutionStatusEnum.COMPLETED
            assert execution_store.get_execution(record.id).attempts == 1
        finally:
            second_queue.shutdown(wait=True, timeout=5.0)

    def test_running_run_keeps_its_attempt_budget(self, workflow_store, execution_store, registry, job_queue):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = execution_store.create_execution(workflow.id, max_attempts=3)
        execution_store.record_attempt(record.id)
        execution_store.mark_running(record.id)

        service = RunService(workflow_store, execution_store, registry, job_queue)
        job_queue.pause(QueueName.WORKFLOW_EXECUTION)
        service.start()

        job = job_queue.get_job(run_job_id(record.id))
        assert job is not None
        assert job.options.attempts == 2

        job_queue.resume(QueueName.WORKFLOW_EXECUTION)
        assert job.wait(10)
        assert execution_store.get_status(record.id) == ExecutionStatusEnum.COMPLETED

    def test_exhausted_run_marked_failed(self, workflow_store, execution_store, registry, job_queue, notifier):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = execution_store.create_execution(workflow.id, max_attempts=1)
        execution_store.record_attempt(record.id)
        execution_store.mark_running(record.id)

        service = RunService(workflow_store, execution_store, registry, job_queue, notifier=notifier)
        service.start()

        execution = execution_store.get_execution(record.id)
        assert execution.status == ExecutionStatusEnum.FAILED
        assert "attempts exhausted" in execution.error_message
        assert job_queue.get_job(run_job_id(record.id)) is None
        assert notifier.events[-1].status == "failed"

    def test_finished_runs_left_alone(self, started_service, workflow_store, execution_store):
        workflow = workflow_store.save_workflow(make_workflow([("start", "manual", {})]))
        record = started_service.submit_run(workflow.id)
        wait_for_run(started_service, record.id)

        assert started_service.recover_runs() == 0
