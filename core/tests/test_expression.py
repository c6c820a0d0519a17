"""Tests for the expression evaluators used by CONDITION, while-loops and FILTER."""

import logging

import pytest

from flowengine.errors import ExecutionFailure, ExpressionError, InvalidConfigError
from flowengine.graph.expression import (
    FallbackExpressionEvaluator,
    SafeExpressionEvaluator,
    create_evaluator,
    normalize_expression,
    stringify_value,
)


@pytest.fixture
def evaluator():
    return SafeExpressionEvaluator()


class TestSafeEvaluator:
    @pytest.mark.parametrize(
        "expression, bindings, expected",
        [
            ('status == "ok"', {"status": "ok"}, True),
            ('status == "ok"', {"status": "bad"}, False),
            ("x > 0", {"x": 5}, True),
            ("x > 0 && !flagged", {"x": 5, "flagged": True}, False),
            ("x === 1 || y !== 2", {"x": 0, "y": 3}, True),
            ("order.total >= 100", {"order": {"total": 120}}, True),
            ('items[0] == "a"', {"items": ["a", "b"]}, True),
            ("len(items) == 3", {"items": [1, 2, 3]}, True),
            ('tier in ["gold", "silver"]', {"tier": "bronze"}, False),
            ("value == null", {"value": None}, True),
            ("enabled == true", {"enabled": True}, True),
            ("(a + b) * 2 > 10", {"a": 2, "b": 4}, True),
            ("0 < x < 10", {"x": 5}, True),
        ],
    )
    def test_evaluate(self, evaluator, expression, bindings, expected):
        assert evaluator.evaluate(expression, bindings) is expected

    def test_operators_inside_strings_are_untouched(self, evaluator):
        assert normalize_expression('s == "a && !b"') == 's == "a && !b"'
        assert evaluator.evaluate('s == "a && !b"', {"s": "a && !b"})

    def test_evaluate_value_returns_raw_result(self, evaluator):
        assert evaluator.evaluate_value("max(a, b) + 1", {"a": 3, "b": 7}) == 8

    def test_unknown_variable_is_retryable_expression_error(self, evaluator):
        with pytest.raises(ExpressionError) as exc_info:
            evaluator.evaluate("missing > 1", {})

        assert isinstance(exc_info.value, ExecutionFailure)
        assert exc_info.value.retryable

    def test_missing_key_is_expression_error(self, evaluator):
        with pytest.raises(ExpressionError):
            evaluator.evaluate("order.total > 1", {"order": {}})

    def test_type_error_is_expression_error(self, evaluator):
        with pytest.raises(ExpressionError, match="Failed to evaluate"):
            evaluator.evaluate('x > "a"', {"x": 1})

    @pytest.mark.parametrize(
        "expression",
        [
            "x >",
            '__import__("os").system("true")',
            "(lambda: 1)()",
            "x.__class__",
            "[i for i in items]",
            "open('/etc/passwd')",
            "",
        ],
    )
    def test_rejected_expressions(self, evaluator, expression):
        with pytest.raises(InvalidConfigError):
            evaluator.evaluate(expression, {"x": 1, "items": []})

    @pytest.mark.parametrize(
        "expression",
        [
            '"a" * 10000000000 == ""',
            '10000000000 * "a" == ""',
            "len(items * 10000000000) > 0",
            "len(name * n) > 0",
        ],
    )
    def test_large_sequence_repetition_is_rejected(self, evaluator, expression):
        with pytest.raises(ExpressionError, match="repetition"):
            evaluator.evaluate(expression, {"items": [1, 2], "name": "abc", "n": 50_000})

    def test_small_sequence_repetition_is_allowed(self, evaluator):
        assert evaluator.evaluate('"ab" * 3 == "ababab"', {})
        assert evaluator.evaluate_value("items * 2", {"items": [1]}) == [1, 1]
        assert evaluator.evaluate("x * 1000000 > 1", {"x": 5})

    def test_custom_functions(self):
        evaluator = SafeExpressionEvaluator(functions={"is_vip": lambda tier: tier == "gold"})
        assert evaluator.evaluate("is_vip(tier)", {"tier": "gold"})

    def test_compiled_trees_are_cached(self, evaluator):
        assert evaluator.compile("x > 1") is evaluator.compile("x > 1")


class TestFallbackEvaluator:
    def test_equality_against_literal(self):
        evaluator = FallbackExpressionEvaluator()

        assert evaluator.evaluate('status == "ok"', {"status": "ok"}) is True
        assert evaluator.evaluate("status == 'ok'", {"status": "bad"}) is False
        assert evaluator.evaluate("done == true", {"done": True}) is True

    def test_anything_else_defaults_to_true(self, caplog):
        evaluator = FallbackExpressionEvaluator()
        with caplog.at_level(logging.WARNING):
            assert evaluator.evaluate("x > 5", {"x": 1}) is True

        assert "defaulting to true" in caplog.text


class TestHelpers:
    def test_stringify_value(self):
        assert stringify_value(None) == "null"
        assert stringify_value(True) == "true"
        assert stringify_value(False) == "false"
        assert stringify_value(3) == "3"

    def test_create_evaluator(self):
        assert isinstance(create_evaluator(), SafeExpressionEvaluator)
        assert isinstance(create_evaluator("fallback"), FallbackExpressionEvaluator)
        with pytest.raises(InvalidConfigError):
            create_evaluator("javascript")
