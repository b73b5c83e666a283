"""Per-run execution context: variable store, node outputs and template interpolation."""

import copy
import json
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from ..models.core import ValueType, utcnow
from .exceptions import ExecutionContextError
from .logging import get_logger


logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
NODE_REFERENCE_PREFIX = "node."

_MISSING = object()


def infer_value_type(value: Any) -> ValueType:
    """Classify a variable value, rejecting anything outside the JSON value union."""
    if value is None:
        return ValueType.NULL
    if isinstance(value, bool):
        return ValueType.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueType.NUMBER
    if isinstance(value, str):
        return ValueType.STRING
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ExecutionContextError(f"Object keys must be strings, got {type(key).__name__}")
            infer_value_type(item)
        return ValueType.OBJECT
    if isinstance(value, (list, tuple)):
        for item in value:
            infer_value_type(item)
        return ValueType.ARRAY
    raise ExecutionContextError(f"Unsupported variable value type: {type(value).__name__}")


def get_nested_value(obj: Any, path: Iterable[str]) -> Any:
    """Walk a dot path through dicts and lists; None when any segment is missing."""
    current = obj
    for part in path:
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def to_jsonable(value: Any) -> Any:
    """Coerce a value into plain JSON types, stringifying anything unknown."""
    return json.loads(json.dumps(value, default=str))


def render_value(value: Any) -> str:
    """Render a resolved value as template text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _parse_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Numbers are epoch milliseconds
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"cannot interpret {type(value).__name__} as a date")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return utcnow()


class ExecutionContext:
    """
    Data owned by a single workflow run.

    Holds workflow variables (seeded from the trigger payload), the output of
    every node visited so far, and execution metadata. Outputs are visible to
    every later node of the same run and never to another run.
    """

    def __init__(self, workflow_id: str, execution_id: str):
        self.workflow_id = workflow_id
        self.execution_id = execution_id
        self.variables: Dict[str, Dict[str, Any]] = {}
        self.node_outputs: Dict[str, Dict[str, Any]] = {}
        self.metadata: Dict[str, Any] = {
            "start_time": utcnow(),
            "current_node": None,
            "execution_path": []
        }

    # Variables

    def set_variable(self, name: str, value: Any) -> None:
        """Store a variable; the last write wins."""
        if not isinstance(name, str) or not name:
            raise ExecutionContextError("Variable name must be a non-empty string", key=str(name))
        value_type = infer_value_type(value)
        self.variables[name] = {
            "value": value,
            "type": value_type,
            "timestamp": utcnow()
        }

    def set_variables(self, values: Optional[Mapping]) -> None:
        for name, value in (values or {}).items():
            self.set_variable(name, value)

    def get_variable(self, name: str, default: Any = None) -> Any:
        entry = self.variables.get(name)
        return entry["value"] if entry is not None else default

    def get_variable_type(self, name: str) -> Optional[ValueType]:
        entry = self.variables.get(name)
        return entry["type"] if entry is not None else None

    def has_variable(self, name: str) -> bool:
        return name in self.variables

    def variable_values(self) -> Dict[str, Any]:
        return {name: entry["value"] for name, entry in self.variables.items()}

    # Node outputs

    def set_node_output(self, node_id: str, output: Any) -> None:
        self.node_outputs[node_id] = {
            "output": output,
            "timestamp": utcnow()
        }

    def get_node_output(self, node_id: str) -> Any:
        entry = self.node_outputs.get(node_id)
        return entry["output"] if entry is not None else None

    def has_node_output(self, node_id: str) -> bool:
        return node_id in self.node_outputs

    def get_node_outputs(self, node_ids: Iterable[str]) -> Dict[str, Any]:
        return {node_id: self.get_node_output(node_id) for node_id in node_ids}

    def node_output_values(self) -> Dict[str, Any]:
        return {node_id: entry["output"] for node_id, entry in self.node_outputs.items()}

    # Templates

    def resolve_reference(self, expression: str, default: Any = None) -> Any:
        """Look up a `{{...}}` expression body without rendering it."""
        value = self._lookup(expression.strip())
        return default if value is _MISSING else value

    def _lookup(self, expression: str) -> Any:
        if expression.startswith(NODE_REFERENCE_PREFIX):
            parts = expression.split(".")
            node_id = parts[1] if len(parts) > 1 else ""
            if not node_id or node_id not in self.node_outputs:
                return _MISSING
            output = self.get_node_output(node_id)
            if len(parts) == 2:
                return output
            return get_nested_value(output, parts[2:])

        if expression not in self.variables:
            return _MISSING
        return self.get_variable(expression)

    def resolve_template(self, template: Any) -> Any:
        """
        Substitute every `{{expr}}` marker in a string.

        `{{node.<id>.<path>}}` reads a stored node output by dot path and
        `{{name}}` reads a variable. A marker whose reference is missing or
        null is left verbatim. Non-string input is returned unchanged.
        """
        if not isinstance(template, str):
            return template

        def replace(match):
            value = self._lookup(match.group(1).strip())
            if value is _MISSING or value is None:
                return match.group(0)
            return render_value(value)

        return TEMPLATE_PATTERN.sub(replace, template)

    def resolve_config(self, config: Any) -> Any:
        """Interpolate every string inside a node configuration, returning a new structure."""
        if isinstance(config, Mapping):
            return {key: self.resolve_config(value) for key, value in config.items()}
        if isinstance(config, (list, tuple)):
            return [self.resolve_config(item) for item in config]
        return self.resolve_template(config)

    # Data mapping

    def transform(self, data: Any, mapping_rules: Optional[Mapping]) -> Any:
        """
        Build a new object from `data` using per-field mapping rules.

        A rule may be a template string, a dot path, a plain field name, a
        structured rule dict with a `type`, or a literal value.
        """
        if not isinstance(mapping_rules, Mapping):
            return data

        result = {}
        for target_field, rule in mapping_rules.items():
            if isinstance(rule, str):
                if "{{" in rule:
                    result[target_field] = self.resolve_template(rule)
                elif "." in rule:
                    result[target_field] = copy.deepcopy(get_nested_value(data, rule.split(".")))
                elif isinstance(data, Mapping):
                    result[target_field] = copy.deepcopy(data.get(rule))
                else:
                    result[target_field] = None
            elif isinstance(rule, Mapping) and rule.get("type"):
                result[target_field] = self.apply_transformation(data, rule)
            else:
                result[target_field] = copy.deepcopy(rule)

        return result

    def apply_transformation(self, data: Any, rule: Mapping) -> Any:
        rule_type = rule.get("type")

        if rule_type == "concat":
            parts = []
            for value in rule.get("values", []):
                resolved = self.resolve_template(value) if isinstance(value, str) else value
                parts.append("" if resolved is None else render_value(resolved))
            return str(rule.get("separator") or "").join(parts)

        if rule_type in ("format_date", "uppercase", "default"):
            field = rule.get("field")
            if not field or not isinstance(field, str):
                raise ExecutionContextError(f"Transformation '{rule_type}' requires a 'field'")
            value = get_nested_value(data, field.split("."))

            if rule_type == "format_date":
                if value is None:
                    return None
                try:
                    return _parse_date(value).date().isoformat()
                except (ValueError, OverflowError, OSError) as e:
                    raise ExecutionContextError(
                        f"Invalid date in field '{field}': {value!r}", key=field
                    ) from e

            if rule_type == "uppercase":
                return value.upper() if isinstance(value, str) else value

            return copy.deepcopy(value) if value is not None else copy.deepcopy(rule.get("value"))

        return copy.deepcopy(rule.get("value"))

    # Metadata

    def update_metadata(self, node_id: str) -> None:
        self.metadata["current_node"] = node_id
        self.metadata["execution_path"].append({
            "node_id": node_id,
            "timestamp": utcnow()
        })

    @property
    def execution_path(self) -> List[str]:
        return [step["node_id"] for step in self.metadata["execution_path"]]

    def get_summary(self) -> Dict[str, Any]:
        start_time = self.metadata.get("start_time")
        duration_ms = None
        if isinstance(start_time, datetime):
            duration_ms = round((utcnow() - start_time).total_seconds() * 1000, 2)
        return {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "variable_count": len(self.variables),
            "node_output_count": len(self.node_outputs),
            "execution_path": self.execution_path,
            "duration_ms": duration_ms
        }

    # Persistence

    def to_record(self) -> Dict[str, Any]:
        """Flatten the context into a JSON-compatible record."""
        record = {
            "workflow_id": self.workflow_id,
            "execution_id": self.execution_id,
            "variables": {
                name: {
                    "value": entry["value"],
                    "type": entry["type"].value,
                    "timestamp": entry["timestamp"].isoformat()
                }
                for name, entry in self.variables.items()
            },
            "node_outputs": {
                node_id: {
                    "output": entry["output"],
                    "timestamp": entry["timestamp"].isoformat()
                }
                for node_id, entry in self.node_outputs.items()
            },
            "metadata": {
                "start_time": self.metadata["start_time"].isoformat()
                if isinstance(self.metadata.get("start_time"), datetime) else self.metadata.get("start_time"),
                "current_node": self.metadata.get("current_node"),
                "execution_path": [
                    {"node_id": step["node_id"], "timestamp": _timestamp(step.get("timestamp")).isoformat()}
                    for step in self.metadata.get("execution_path", [])
                ]
            }
        }
        return to_jsonable(record)

    def serialize(self) -> str:
        return json.dumps(self.to_record())

    def restore(self, data: Union[str, Mapping]) -> bool:
        """
        Rebuild the context from a record or its JSON form.

        Returns False, logs, and leaves the context untouched when the input
        cannot be parsed.
        """
        try:
            record = json.loads(data) if isinstance(data, (str, bytes)) else data
            if not isinstance(record, Mapping):
                raise ExecutionContextError("Serialized context must be an object")

            variables = dict(self.variables)
            if record.get("variables") is not None:
                variables = {}
                for name, entry in record["variables"].items():
                    value = entry["value"]
                    variables[name] = {
                        "value": value,
                        "type": ValueType(entry["type"]) if entry.get("type") else infer_value_type(value),
                        "timestamp": _timestamp(entry.get("timestamp"))
                    }

            node_outputs = dict(self.node_outputs)
            if record.get("node_outputs") is not None:
                node_outputs = {
                    node_id: {
                        "output": entry["output"],
                        "timestamp": _timestamp(entry.get("timestamp"))
                    }
                    for node_id, entry in record["node_outputs"].items()
                }

            metadata = dict(self.metadata)
            if record.get("metadata") is not None:
                restored = dict(record["metadata"])
                if restored.get("start_time") is not None:
                    restored["start_time"] = _timestamp(restored["start_time"])
                restored["execution_path"] = [
                    {"node_id": step["node_id"], "timestamp": _timestamp(step.get("timestamp"))}
                    for step in restored.get("execution_path", [])
                ]
                metadata.update(restored)

        except (ValueError, TypeError, KeyError, AttributeError, ExecutionContextError) as e:
            logger.error(
                f"Failed to restore execution context for {self.execution_id}: {e}",
                exc_info=True
            )
            return False

        self.variables = variables
        self.node_outputs = node_outputs
        self.metadata = metadata
        return True

    @classmethod
    def from_record(cls, record: Mapping) -> 'ExecutionContext':
        context = cls(record.get("workflow_id", ""), record.get("execution_id", ""))
        if not context.restore(record):
            raise ExecutionContextError("Could not rebuild execution context from record")
        return context
