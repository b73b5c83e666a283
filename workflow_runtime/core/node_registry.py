"""Node dispatch registry mapping node type tags to handler strategies."""

import inspect
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple, Union

from ..models.core import NodeResult, NodeSpec
from .exceptions import NodeRegistryError, NodeTypeNotRegisteredError
from .execution_context import ExecutionContext
from .logging import get_logger

logger = get_logger(__name__)


class NodeHandler(ABC):
    """
    Strategy executing one node type.

    Handlers return a NodeResult (or a bare output, which is wrapped) and
    report expected remote failures with ``success=False``. They raise for
    configuration problems or unexpected faults.
    """

    node_type: str = ""
    description: str = ""
    # Config keys whose values are handed over without template interpolation
    raw_config_keys: Tuple[str, ...] = ()

    @abstractmethod
    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> Union[NodeResult, Any]:
        ...


class FunctionHandler(NodeHandler):
    """Adapts a plain ``function(config, context)`` into a NodeHandler."""

    def __init__(self, function: Callable, node_type: str = "", description: str = ""):
        self.function = function
        self.node_type = node_type
        self.description = description or (inspect.getdoc(function) or "").split("\n")[0]

    def execute(self, config, context):
        return self.function(config, context)


def config_option(config: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """First present value among alternative spellings of a config key."""
    for name in names:
        if name in config and config[name] is not None:
            return config[name]
    return default


class NodeRegistry:
    """Registry of handlers that nodes are dispatched to by their type tag."""

    def __init__(self):
        self._handlers: Dict[str, NodeHandler] = {}
        self._lock = threading.RLock()

    def register(
        self,
        node_type: str,
        handler: Union[NodeHandler, Callable],
        description: str = "",
        replace: bool = False
    ) -> None:
        """Register a handler for a node type.

        Args:
            node_type: Type tag used by NodeSpec.type
            handler: NodeHandler instance or a callable taking (config, context)
            description: Optional description, defaults to the handler's own
            replace: Overwrite an existing registration instead of failing

        Raises:
            NodeRegistryError: If the type tag is empty, already taken or the handler is invalid
        """
        if not node_type or not node_type.strip():
            raise NodeRegistryError("Node type cannot be empty", operation="register")
        node_type = node_type.strip()

        if not isinstance(handler, NodeHandler):
            if not callable(handler):
                raise NodeRegistryError(
                    f"Handler for '{node_type}' must be a NodeHandler or callable",
                    node_type=node_type,
                    operation="register"
                )
            handler = FunctionHandler(handler, node_type=node_type, description=description)

        if description:
            handler.description = description

        with self._lock:
            if node_type in self._handlers and not replace:
                raise NodeRegistryError(
                    f"Node type '{node_type}' is already registered",
                    node_type=node_type,
                    operation="register"
                )
            self._handlers[node_type] = handler

        logger.info(f"Registered handler for node type '{node_type}': {type(handler).__name__}")

    def unregister(self, node_type: str) -> bool:
        with self._lock:
            removed = self._handlers.pop(node_type, None) is not None
        if removed:
            logger.info(f"Unregistered handler for node type '{node_type}'")
        return removed

    def get_handler(self, node_type: str) -> NodeHandler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise NodeTypeNotRegisteredError(node_type)
        return handler

    def has_handler(self, node_type: str) -> bool:
        return node_type in self._handlers

    def list_handlers(self) -> Dict[str, str]:
        """Map of registered node types to their descriptions."""
        with self._lock:
            return {node_type: handler.description for node_type, handler in sorted(self._handlers.items())}

    def get_handler_info(self, node_type: str) -> Dict[str, Any]:
        handler = self.get_handler(node_type)
        return {
            "node_type": node_type,
            "description": handler.description,
            "handler": type(handler).__name__,
            "raw_config_keys": list(handler.raw_config_keys),
        }

    def resolve_config(self, node_type: str, config: Optional[Dict[str, Any]],
                       context: ExecutionContext) -> Dict[str, Any]:
        """Interpolate templates in a node's config, leaving the handler's raw keys as authored."""
        handler = self.get_handler(node_type)
        resolved = {}
        for key, value in (config or {}).items():
            if key in handler.raw_config_keys:
                resolved[key] = value
            else:
                resolved[key] = context.resolve_config(value)
        return resolved

    def dispatch(
        self,
        node_type: str,
        config: Optional[Dict[str, Any]],
        context: ExecutionContext,
        resolve_templates: bool = True
    ) -> NodeResult:
        """
        Run the handler registered for ``node_type``.

        Raises NodeTypeNotRegisteredError for unknown types; exceptions raised
        by the handler propagate unchanged.
        """
        handler = self.get_handler(node_type)
        if resolve_templates:
            config = self.resolve_config(node_type, config, context)

        result = handler.execute(config or {}, context)

        if isinstance(result, NodeResult):
            return result
        return NodeResult(output=result)

    def dispatch_node(self, node: NodeSpec, context: ExecutionContext) -> NodeResult:
        return self.dispatch(node.type, node.config, context)
