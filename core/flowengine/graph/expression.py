"""
Expression evaluation for CONDITION nodes, while-loops and FILTER items.

Evaluators implement one narrow method, ``evaluate(expression, bindings) -> bool``.
Two implementations ship with the engine:

- SafeExpressionEvaluator: parses the expression with ``ast`` and walks a
  whitelist of node types (comparisons, boolean connectives, arithmetic,
  field lookups, literals). No attribute access on objects, no calls except a
  handful of pure helpers, no comprehensions or lambdas.
- FallbackExpressionEvaluator: supports only ``left == "literal"`` and
  returns True for anything else. Kept for deployments that disable real
  evaluation; a warning is logged every time it guesses.

Flow authors often write JavaScript-style conditions, so ``&&``, ``||``,
``!``, ``===``, ``!==``, ``true``, ``false`` and ``null`` are accepted
outside string literals.
"""

import ast
import logging
import operator
import re
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from flowengine.errors import ExpressionError, InvalidConfigError

logger = logging.getLogger(__name__)


@runtime_checkable
class ExpressionEvaluator(Protocol):
    """Evaluates a boolean expression against named bindings."""

    def evaluate(self, expression: str, bindings: Mapping[str, Any]) -> bool: ...


# Strings are matched first so that operators inside literals are left alone
_JS_TOKENS = re.compile(
    r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|(&&|\|\||===|!==|!(?!=))"""
)
_JS_REPLACEMENTS = {"&&": " and ", "||": " or ", "===": "==", "!==": "!=", "!": " not "}

_LITERAL_NAMES = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}

_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
}

_MAX_EXPRESSION_LENGTH = 2000
_MAX_REPEAT_LENGTH = 100_000


def _check_repeat(left: Any, right: Any) -> None:
    """Reject sequence repetition whose result would exceed _MAX_REPEAT_LENGTH items."""
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, str | bytes | list | tuple) and isinstance(count, int):
            if len(seq) * count > _MAX_REPEAT_LENGTH:
                raise ExpressionError(
                    f"Sequence repetition exceeds {_MAX_REPEAT_LENGTH} items", repeat=count
                )


def normalize_expression(expression: str) -> str:
    """Rewrite JavaScript boolean operators into Python ones, skipping string literals."""

    def _replace(match: re.Match) -> str:
        if match.group(1) is not None:
            return match.group(1)
        return _JS_REPLACEMENTS[match.group(2)]

    return _JS_TOKENS.sub(_replace, expression).strip()


class SafeExpressionEvaluator:
    """
    AST-whitelist evaluator.

    Example:
        evaluator = SafeExpressionEvaluator()
        evaluator.evaluate('status == "ok" && retries < 3', {"status": "ok", "retries": 1})
        # True

    Raises:
        InvalidConfigError: Syntax errors and disallowed constructs
        ExpressionError: Unknown names, missing keys, type errors at evaluation
    """

    def __init__(self, functions: Mapping[str, Any] | None = None):
        self._functions = {**_SAFE_FUNCTIONS, **(functions or {})}
        self._cache: dict[str, ast.Expression] = {}

    def evaluate(self, expression: str, bindings: Mapping[str, Any]) -> bool:
        return bool(self.evaluate_value(expression, bindings))

    def evaluate_value(self, expression: str, bindings: Mapping[str, Any]) -> Any:
        tree = self.compile(expression)
        try:
            return self._eval(tree.body, bindings)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError) as e:
            raise ExpressionError(
                f"Failed to evaluate '{expression}': {e}", expression=expression
            ) from e

    def compile(self, expression: str) -> ast.Expression:
        """Parse and whitelist-check an expression. Parsed trees are cached."""
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidConfigError("Expression must be a non-empty string")
        if len(expression) > _MAX_EXPRESSION_LENGTH:
            raise InvalidConfigError(
                f"Expression exceeds {_MAX_EXPRESSION_LENGTH} characters", expression=expression[:80]
            )
        cached = self._cache.get(expression)
        if cached is not None:
            return cached

        source = normalize_expression(expression)
        try:
            tree = ast.parse(source, mode="eval")
        except SyntaxError as e:
            raise InvalidConfigError(
                f"Invalid expression '{expression}': {e.msg}", expression=expression
            ) from e

        for node in ast.walk(tree):
            self._check_node(node, expression)

        self._cache[expression] = tree
        return tree

    def _check_node(self, node: ast.AST, expression: str) -> None:
        allowed = (
            ast.Expression,
            ast.BoolOp,
            ast.And,
            ast.Or,
            ast.UnaryOp,
            ast.BinOp,
            ast.Compare,
            ast.IfExp,
            ast.Name,
            ast.Load,
            ast.Constant,
            ast.Attribute,
            ast.Subscript,
            ast.List,
            ast.Tuple,
            ast.Call,
            *_BINARY_OPS,
            *_UNARY_OPS,
            *_COMPARE_OPS,
        )
        if not isinstance(node, allowed):
            raise InvalidConfigError(
                f"Disallowed construct {type(node).__name__} in expression '{expression}'",
                expression=expression,
            )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise InvalidConfigError(
                f"Access to private attribute '{node.attr}' in expression '{expression}'",
                expression=expression,
            )
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in self._functions:
                raise InvalidConfigError(
                    f"Only {sorted(self._functions)} may be called in expression '{expression}'",
                    expression=expression,
                )
            if node.keywords:
                raise InvalidConfigError(
                    f"Keyword arguments are not allowed in expression '{expression}'",
                    expression=expression,
                )

    def _eval(self, node: ast.AST, bindings: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in bindings:
                return bindings[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            raise ExpressionError(f"Unknown variable '{node.id}'", variable=node.id)

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self._eval(operand, bindings)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self._eval(operand, bindings)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self._eval(node.operand, bindings))

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, bindings)
            right = self._eval(node.right, bindings)
            if isinstance(node.op, ast.Mult):
                _check_repeat(left, right)
            return _BINARY_OPS[type(node.op)](left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, bindings)
            for op, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator, bindings)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, bindings):
                return self._eval(node.body, bindings)
            return self._eval(node.orelse, bindings)

        if isinstance(node, ast.Attribute):
            # Attribute access is key lookup: order.total == order["total"]
            container = self._eval(node.value, bindings)
            return self._lookup(container, node.attr)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, bindings)
            key = self._eval(node.slice, bindings)
            return self._lookup(container, key)

        if isinstance(node, ast.List | ast.Tuple):
            return [self._eval(element, bindings) for element in node.elts]

        if isinstance(node, ast.Call):
            func = self._functions[node.func.id]  # type: ignore[attr-defined]
            return func(*(self._eval(arg, bindings) for arg in node.args))

        raise InvalidConfigError(f"Unsupported expression node {type(node).__name__}")

    @staticmethod
    def _lookup(container: Any, key: Any) -> Any:
        if isinstance(container, Mapping):
            if key not in container:
                raise ExpressionError(f"Key '{key}' not found")
            return container[key]
        if isinstance(container, list | tuple | str) and isinstance(key, int):
            return container[key]
        raise ExpressionError(f"Cannot look up '{key}' on {type(container).__name__}")


class FallbackExpressionEvaluator:
    """
    Restricted evaluator used when real evaluation is disabled.

    Only ``left == "literal"`` is understood: ``left`` is looked up in the
    bindings, stringified, and compared with the unquoted literal. Every
    other expression evaluates to True, with a warning.
    """

    def evaluate(self, expression: str, bindings: Mapping[str, Any]) -> bool:
        if "==" in expression:
            parts = expression.split("==")
            if len(parts) == 2:
                left = parts[0].strip()
                right = parts[1].strip().replace('"', "").replace("'", "")
                return right == stringify_value(bindings.get(left))

        logger.warning(f"Cannot evaluate expression, defaulting to true: {expression}")
        return True


def stringify_value(value: Any) -> str:
    """Stringify the way flow payloads are written: JSON-style booleans and null."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def create_evaluator(kind: str = "safe") -> ExpressionEvaluator:
    """Build the evaluator named in configuration ("safe" or "fallback")."""
    if kind == "safe":
        return SafeExpressionEvaluator()
    if kind == "fallback":
        return FallbackExpressionEvaluator()
    raise InvalidConfigError(f"Unknown expression evaluator '{kind}'")
