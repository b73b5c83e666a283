"""Graph model over a workflow definition: start nodes, successors and cycle detection."""

from typing import Dict, List, Optional

from ..models.core import EdgeSpec, NodeSpec, ValidationResult, WorkflowDefinition
from .exceptions import CycleDetectedError, WorkflowConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

NO_START_NODES_MESSAGE = "No starting nodes found in workflow"


class WorkflowGraph:
    """Read-only adjacency view of a WorkflowDefinition, built once per run."""

    def __init__(self, definition: WorkflowDefinition):
        self.definition = definition
        self._nodes: Dict[str, NodeSpec] = {node.id: node for node in definition.nodes}
        self._outgoing: Dict[str, List[EdgeSpec]] = {node.id: [] for node in definition.nodes}
        self._incoming: Dict[str, int] = {node.id: 0 for node in definition.nodes}

        for edge in definition.edges:
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target] += 1

    @property
    def workflow_id(self) -> Optional[str]:
        return self.definition.id

    @property
    def nodes(self) -> List[NodeSpec]:
        return list(self.definition.nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, node_id: str) -> Optional[NodeSpec]:
        return self._nodes.get(node_id)

    def start_nodes(self) -> List[NodeSpec]:
        """Nodes without an incoming edge, in definition order."""
        return [node for node in self.definition.nodes if self._incoming[node.id] == 0]

    def outgoing_edges(self, node_id: str) -> List[EdgeSpec]:
        return list(self._outgoing.get(node_id, []))

    def successors(self, node_id: str) -> List[NodeSpec]:
        """Targets of every edge leaving `node_id`, in edge order."""
        return [self._nodes[edge.target] for edge in self._outgoing.get(node_id, [])]

    def find_cycle(self) -> Optional[List[str]]:
        """
        Return one cycle as a list of node IDs (first node repeated at the end),
        or None when the graph is acyclic.

        A node reachable through two different paths is not a cycle.
        """
        white, gray, black = 0, 1, 2
        color = {node_id: white for node_id in self._nodes}

        for root in self._nodes:
            if color[root] != white:
                continue

            color[root] = gray
            path = [root]
            stack = [(root, iter(self._outgoing[root]))]

            while stack:
                node_id, edges = stack[-1]
                edge = next(edges, None)
                if edge is None:
                    color[node_id] = black
                    path.pop()
                    stack.pop()
                    continue

                target = edge.target
                if color[target] == gray:
                    return path[path.index(target):] + [target]
                if color[target] == white:
                    color[target] = gray
                    path.append(target)
                    stack.append((target, iter(self._outgoing[target])))

        return None

    def unregistered_types(self, registry) -> List[str]:
        missing = []
        for node in self.definition.nodes:
            if not registry.has_handler(node.type) and node.type not in missing:
                missing.append(node.type)
        return missing

    def validate(self, registry=None) -> ValidationResult:
        """Collect every configuration problem that would stop a run."""
        errors = []
        warnings = []

        if not self.start_nodes():
            errors.append(NO_START_NODES_MESSAGE)

        cycle = self.find_cycle()
        if cycle:
            errors.append(f"Cycle detected: {' -> '.join(cycle)}")

        if registry is not None:
            for node_type in self.unregistered_types(registry):
                errors.append(f"No handler registered for node type '{node_type}'")

        if len(self._nodes) > 1:
            for node in self.definition.nodes:
                if self._incoming[node.id] == 0 and not self._outgoing[node.id]:
                    warnings.append(f"Node '{node.id}' is not connected to any other node")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def ensure_executable(self, registry=None) -> None:
        """
        Raise a WorkflowConfigurationError if the run cannot start.

        Checked in order: start nodes exist, no cycle, every node type has a
        handler.
        """
        if not self.start_nodes():
            raise WorkflowConfigurationError(NO_START_NODES_MESSAGE, workflow_id=self.workflow_id)

        cycle = self.find_cycle()
        if cycle:
            raise CycleDetectedError(cycle, workflow_id=self.workflow_id)

        if registry is not None:
            missing = self.unregistered_types(registry)
            if missing:
                raise WorkflowConfigurationError(
                    f"Unregistered node types: {', '.join(missing)}",
                    workflow_id=self.workflow_id,
                    problems=[f"No handler registered for node type '{t}'" for t in missing]
                )
