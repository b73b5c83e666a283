"""Data transformation node handler."""

import json
from typing import Any, Dict

from ..core.exceptions import ConfigurationError
from ..core.execution_context import ExecutionContext, render_value
from ..core.node_registry import NodeHandler, config_option
from ..models.core import NodeResult


def _json_parse(value):
    return json.loads(value) if isinstance(value, str) else value


def _json_stringify(value):
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    return render_value(value) if value is not None else "null"


def _text(value):
    return "" if value is None else render_value(value)


TRANSFORMATIONS = {
    "json_parse": _json_parse,
    "json_stringify": _json_stringify,
    "uppercase": lambda value: _text(value).upper(),
    "lowercase": lambda value: _text(value).lower(),
    "trim": lambda value: _text(value).strip(),
    "passthrough": lambda value: value,
}


class TransformHandler(NodeHandler):
    """
    Reshapes data already in the run.

    Input is the output of the node named by ``inputSource``, else the
    ``inputData`` variable, else ``inputData`` from the config. Mapping rules
    are applied first, then an optional named transformation.
    """

    node_type = "transform"
    description = "Map and transform data from variables or earlier node outputs"
    raw_config_keys = ("mapping_rules", "mappingRules")

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        input_source = config_option(config, "input_source", "inputSource")
        if input_source:
            if not context.has_node_output(input_source):
                raise ConfigurationError(
                    f"Input source node '{input_source}' has no output in this run",
                    config_key="inputSource"
                )
            input_data = context.get_node_output(input_source)
        elif context.has_variable("inputData"):
            input_data = context.get_variable("inputData")
        else:
            input_data = config_option(config, "input_data", "inputData", default={})

        mapping_rules = config_option(config, "mapping_rules", "mappingRules")
        transformed = context.transform(input_data, mapping_rules) if mapping_rules else input_data

        transformation = config_option(config, "transformation")
        if transformation:
            if transformation not in TRANSFORMATIONS:
                raise ConfigurationError(
                    f"Unknown transformation '{transformation}'. "
                    f"Supported: {', '.join(sorted(TRANSFORMATIONS))}",
                    config_key="transformation"
                )
            transformed = TRANSFORMATIONS[transformation](transformed)

        return NodeResult(output={
            "original_data": input_data,
            "transformed_data": transformed,
            "mapping_rules": mapping_rules,
            "transformation": transformation or "passthrough",
        })
