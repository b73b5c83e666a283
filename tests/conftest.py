"""Pytest configuration and fixtures."""

import os
import tempfile
import pytest

from workflow_runtime.config import get_testing_config
from workflow_runtime.core.execution_context import ExecutionContext
from workflow_runtime.core.execution_store import ExecutionStore
from workflow_runtime.core.executor import GraphExecutor
from workflow_runtime.core.job_queue import JobQueue
from workflow_runtime.core.notifier import Notifier
from workflow_runtime.core.workflow_store import WorkflowStore
from workflow_runtime.nodes import build_default_registry
from workflow_runtime.storage.database import configure_database, create_tables, reset_database_engine


class CollectingNotifier(Notifier):
    """Keeps every published event in memory."""

    def __init__(self):
        self.events = []

    def _deliver(self, event):
        self.events.append(event)

    def statuses(self, node_id=None):
        return [event.status for event in self.events if event.node_id == node_id]


def fake_llm_client(prompt, model, temperature, max_tokens, system_prompt):
    return {"response": f"echo: {prompt}", "tokens": len(prompt.split())}


def failing_handler(config, context):
    """Always raises."""
    raise RuntimeError(config.get("message") or "boom")


def make_workflow(nodes, edges=None, name="Test workflow"):
    """Build a workflow definition dict from (id, type, config) tuples or node dicts."""
    node_list = []
    for node in nodes:
        if isinstance(node, dict):
            node_list.append(node)
        else:
            node_id, node_type, config = node
            node_list.append({"id": node_id, "type": node_type, "config": config})

    edge_list = []
    for edge in edges or []:
        if isinstance(edge, dict):
            edge_list.append(edge)
        else:
            edge_list.append({"source": edge[0], "target": edge[1]})

    return {"name": name, "nodes": node_list, "edges": edge_list}


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    db_fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)

    configure_database(f"sqlite:///{db_path}")
    create_tables()

    yield db_path

    reset_database_engine()
    try:
        os.unlink(db_path)
    except OSError:
        pass


@pytest.fixture
def notifier():
    return CollectingNotifier()


@pytest.fixture
def sent_messages():
    return []


@pytest.fixture
def registry(sent_messages):
    """Default registry with instant delays and in-memory connector clients."""

    def email_sender(message, config):
        sent_messages.append({"to": config.get("to"), "message": message})
        return {"delivered": True}

    node_registry = build_default_registry(
        llm_client=fake_llm_client,
        senders={"email": email_sender},
        sleep=lambda seconds: None
    )
    node_registry.register("fail", failing_handler)
    return node_registry


@pytest.fixture
def workflow_store(temp_db):
    return WorkflowStore()


@pytest.fixture
def execution_store(temp_db):
    return ExecutionStore()


@pytest.fixture
def executor(registry, execution_store, notifier):
    return GraphExecutor(registry, execution_store, notifier=notifier)


@pytest.fixture
def job_queue():
    queue = JobQueue(get_testing_config().lanes)
    yield queue
    queue.shutdown(wait=True, timeout=5.0)


@pytest.fixture
def run_workflow(workflow_store, execution_store, executor):
    """Store a workflow, create its execution and run it in the calling thread."""

    def _run(definition, trigger_data=None, graph_executor=None, **execute_kwargs):
        workflow = workflow_store.save_workflow(definition)
        record = execution_store.create_execution(workflow.id, trigger_data)
        context = ExecutionContext(workflow.id, record.id)
        context.set_variables(trigger_data)
        return (graph_executor or executor).execute(workflow, context, **execute_kwargs)

    return _run
