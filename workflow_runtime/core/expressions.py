"""Constrained expression interpreter for condition nodes.

Expressions are parsed with :mod:`ast` and only a small whitelist of node
kinds is evaluated: literals, variable names, ``node.<id>.<path>`` lookups,
subscripts, comparisons, boolean connectives and arithmetic. JavaScript style
operators (``===``, ``!==``, ``&&``, ``||``, ``!``) are accepted and mapped
to their Python equivalents.
"""

import ast
import operator
import re
from typing import Any, List

from .exceptions import ExpressionError
from .execution_context import ExecutionContext, get_nested_value
from .logging import get_logger


logger = get_logger(__name__)

_QUOTED = re.compile(r"""("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')""")

_JS_OPERATORS = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]

_CONSTANT_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript operators outside string literals into Python syntax."""
    segments = _QUOTED.split(expression)
    for index in range(0, len(segments), 2):
        segment = segments[index]
        for pattern, replacement in _JS_OPERATORS:
            segment = pattern.sub(replacement, segment)
        segments[index] = segment
    return "".join(segments).strip()


class ConditionEvaluator:
    """Evaluates condition expressions against one execution context."""

    def __init__(self, context: ExecutionContext):
        self.context = context

    def evaluate(self, expression: Any) -> bool:
        """Evaluate to a boolean; any error yields False and a warning."""
        if isinstance(expression, bool):
            return expression
        if expression is None or (isinstance(expression, str) and not expression.strip()):
            return False

        try:
            return bool(self.evaluate_value(str(expression)))
        except (ExpressionError, SyntaxError, TypeError, ValueError, ZeroDivisionError) as e:
            logger.warning(f"Condition '{expression}' evaluated to false: {e}")
            return False

    def evaluate_value(self, expression: str) -> Any:
        """Evaluate and return the raw value; raises on unsupported syntax."""
        tree = ast.parse(normalize_expression(expression), mode="eval")
        return self._eval(tree.body, expression)

    def _eval(self, node: ast.AST, source: str) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in _CONSTANT_NAMES:
                return _CONSTANT_NAMES[node.id]
            return self.context.get_variable(node.id)

        if isinstance(node, ast.Attribute):
            return self._lookup_path(self._attribute_chain(node, source))

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, source)
            key = self._eval(node.slice, source)
            if isinstance(container, dict):
                return container.get(key)
            if isinstance(container, (list, tuple, str)) and isinstance(key, int):
                return container[key] if -len(container) <= key < len(container) else None
            return None

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result = True
                for value in node.values:
                    result = self._eval(value, source)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, source)
                if result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, source))

        if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
            left = self._eval(node.left, source)
            right = self._eval(node.right, source)
            if isinstance(node.op, ast.Add) and isinstance(left, str) and isinstance(right, str):
                return left + right
            if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (left, right)):
                raise ExpressionError("Arithmetic requires numeric operands", expression=source)
            return _BINARY_OPERATORS[type(node.op)](left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, source)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, source)
                if type(op) not in _COMPARISONS:
                    raise ExpressionError(f"Unsupported comparison {type(op).__name__}", expression=source)
                if not _COMPARISONS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(item, source) for item in node.elts]

        raise ExpressionError(f"Unsupported expression element: {type(node).__name__}", expression=source)

    def _attribute_chain(self, node: ast.AST, source: str) -> List[str]:
        parts = []
        while isinstance(node, ast.Attribute):
            parts.append(node.attr)
            node = node.value
        if not isinstance(node, ast.Name):
            raise ExpressionError("Attribute access must start from a name", expression=source)
        parts.append(node.id)
        return list(reversed(parts))

    def _lookup_path(self, parts: List[str]) -> Any:
        if parts[0] == "node":
            return self.context.resolve_reference(".".join(parts))
        return get_nested_value(self.context.get_variable(parts[0]), parts[1:])


def evaluate_condition(expression: Any, context: ExecutionContext) -> bool:
    return ConditionEvaluator(context).evaluate(expression)
