"""Restricted boolean expressions over the accumulated workflow context.

Expressions are parsed with :mod:`ast` and interpreted node by node; only
boolean operators, comparisons, literals and dotted/subscripted names are
accepted. Nothing is compiled or executed.
"""

from __future__ import annotations

import ast
import operator
from collections.abc import Callable, Mapping
from typing import Any

from agent_desk.workflow.errors import ConditionError

MAX_EXPRESSION_CHARS = 500

_COMPARATORS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

_ALLOWED_NODES: tuple[type[ast.AST], ...] = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Constant,
    ast.Name,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.Load,
    *_COMPARATORS,
)

_CONSTANT_TYPES = (str, int, float, bool, type(None))


def parse_condition(expression: str) -> ast.Expression:
    """Parse and validate ``expression``; raise ``ConditionError`` if disallowed."""

    if not isinstance(expression, str) or not expression.strip():
        raise ConditionError("Condition must be a non-empty string.")
    if len(expression) > MAX_EXPRESSION_CHARS:
        raise ConditionError(f"Condition longer than {MAX_EXPRESSION_CHARS} characters.")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as error:
        raise ConditionError(f"Invalid condition syntax: {error.msg}") from error

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionError(f"Unsupported syntax in condition: {type(node).__name__}")
        if isinstance(node, ast.Constant) and not isinstance(node.value, _CONSTANT_TYPES):
            raise ConditionError(f"Unsupported literal in condition: {node.value!r}")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ConditionError(f"Private names are not allowed: {node.id}")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ConditionError(f"Private attributes are not allowed: {node.attr}")
        if isinstance(node, ast.Subscript) and not isinstance(node.slice, ast.Constant):
            raise ConditionError("Subscripts must use a literal key.")
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
            operand = node.operand
            if not (
                isinstance(operand, ast.Constant)
                and isinstance(operand.value, int | float)
                and not isinstance(operand.value, bool)
            ):
                raise ConditionError("Unary minus is only allowed on numeric literals.")
    return tree


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate ``expression`` against ``context``; missing paths are ``None``."""

    tree = parse_condition(expression)
    return bool(_evaluate(tree.body, context))


def _evaluate(node: ast.AST, context: Mapping[str, Any]) -> Any:  # noqa: PLR0911
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_evaluate(value, context) for value in node.values)
        return any(_evaluate(value, context) for value in node.values)
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        return -_evaluate(node.operand, context)
    if isinstance(node, ast.UnaryOp):
        return not _evaluate(node.operand, context)
    if isinstance(node, ast.Compare):
        return _compare(node, context)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        return _lookup(context, node.id)
    if isinstance(node, ast.Attribute):
        return _lookup(_evaluate(node.value, context), node.attr)
    if isinstance(node, ast.Subscript):
        key = node.slice.value if isinstance(node.slice, ast.Constant) else None
        return _lookup(_evaluate(node.value, context), key)
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_evaluate(item, context) for item in node.elts]
    raise ConditionError(f"Unsupported syntax in condition: {type(node).__name__}")


def _compare(node: ast.Compare, context: Mapping[str, Any]) -> bool:
    left = _evaluate(node.left, context)
    for op, comparator in zip(node.ops, node.comparators, strict=True):
        right = _evaluate(comparator, context)
        try:
            if not _COMPARATORS[type(op)](left, right):
                return False
        except TypeError:
            # Ordering None against a number, or membership in None.
            return False
        left = right
    return True


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, list) and isinstance(key, int) and not isinstance(key, bool):
        if -len(container) <= key < len(container):
            return container[key]
    return None
