"""Built-in node handlers and the default registry factory."""

from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy import Engine

from ..core.node_registry import NodeRegistry
from .connectors import ApiRequestHandler, CommunicationHandler, DatabaseQueryHandler, LLMHandler
from .control import ConditionHandler, DelayHandler, ManualTriggerHandler
from .data import TRANSFORMATIONS, TransformHandler


def build_default_registry(
    http_session: Optional[requests.Session] = None,
    database_engine: Optional[Engine] = None,
    llm_client: Optional[Callable[..., Any]] = None,
    senders: Optional[Dict[str, Callable[[str, Dict[str, Any]], Any]]] = None,
    http_timeout: float = 30.0,
    sleep: Optional[Callable[[float], None]] = None
) -> NodeRegistry:
    """Create a registry with every built-in handler wired to the given clients."""
    registry = NodeRegistry()
    registry.register("manual", ManualTriggerHandler())
    registry.register("delay", DelayHandler(sleep=sleep) if sleep else DelayHandler())
    registry.register("condition", ConditionHandler())
    registry.register("transform", TransformHandler())
    registry.register("api", ApiRequestHandler(session=http_session, timeout=http_timeout))
    registry.register("database", DatabaseQueryHandler(engine=database_engine))
    registry.register("llm", LLMHandler(client=llm_client))
    registry.register("communication", CommunicationHandler(senders=senders))
    return registry


__all__ = [
    "build_default_registry",
    "ManualTriggerHandler",
    "DelayHandler",
    "ConditionHandler",
    "TransformHandler",
    "TRANSFORMATIONS",
    "ApiRequestHandler",
    "DatabaseQueryHandler",
    "LLMHandler",
    "CommunicationHandler",
]
