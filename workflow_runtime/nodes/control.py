"""Trigger, delay and condition node handlers."""

import time
from typing import Any, Callable, Dict

from ..core.exceptions import ConfigurationError
from ..core.execution_context import ExecutionContext
from ..core.expressions import ConditionEvaluator
from ..core.logging import get_logger
from ..core.node_registry import NodeHandler, config_option
from ..models.core import NodeResult, utcnow

logger = get_logger(__name__)

DEFAULT_DELAY_MS = 1000


class ManualTriggerHandler(NodeHandler):
    """Marks the point where a user started the run."""

    node_type = "manual"
    description = "Manual trigger marking the start of a run"

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        return NodeResult(output={
            "message": "Manual trigger activated",
            "timestamp": utcnow().isoformat(),
            "triggered_by": config_option(config, "triggered_by", "triggeredBy", default="user"),
        })


class DelayHandler(NodeHandler):
    """Pauses the run for ``delay`` milliseconds."""

    node_type = "delay"
    description = "Wait for a number of milliseconds"

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        raw_delay = config_option(config, "delay", "delay_ms", default=DEFAULT_DELAY_MS)
        try:
            delay_ms = float(raw_delay)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Delay must be a number of milliseconds, got {raw_delay!r}", config_key="delay")
        if delay_ms < 0:
            raise ConfigurationError("Delay cannot be negative", config_key="delay")

        self._sleep(delay_ms / 1000.0)
        return NodeResult(output={
            "delayed": int(delay_ms) if delay_ms.is_integer() else delay_ms,
            "timestamp": utcnow().isoformat(),
        })


class ConditionHandler(NodeHandler):
    """
    Evaluates the ``condition`` expression against the run's context.

    The output carries the boolean ``result`` and the ``branch`` label
    ("true"/"false") that labelled outgoing edges are matched against.
    """

    node_type = "condition"
    description = "Evaluate a boolean expression"

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        expression = config_option(config, "condition", "expression", default="true")
        result = ConditionEvaluator(context).evaluate(expression)
        logger.debug(f"Condition '{expression}' evaluated to {result}")
        return NodeResult(output={
            "condition": expression,
            "result": result,
            "branch": "true" if result else "false",
        })
