"""
Data-transform executor: MAPPER, FILTER, VALIDATOR, SPLITTER, MERGER.

Pure payload transformations with no external collaborators.
"""

import logging
import operator
import re
from collections.abc import Callable
from typing import Any

from flowengine.errors import ExecutionFailure, InvalidConfigError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.control_nodes import build_bindings
from flowengine.graph.expression import ExpressionEvaluator, SafeExpressionEvaluator
from flowengine.graph.node import NodeExecutor
from flowengine.graph.snapshot import NodeDescriptor, NodeType

logger = logging.getLogger(__name__)

DEFAULT_SPLIT_DELIMITER = "\n"
DEFAULT_SPLIT_LENGTH = 1000


def _to_number(value: Any) -> Any:
    if isinstance(value, str):
        number = float(value)
        return int(number) if number.is_integer() else number
    return value


TRANSFORMS: dict[str, Callable[[Any], Any]] = {
    "uppercase": lambda v: v.upper() if isinstance(v, str) else v,
    "lowercase": lambda v: v.lower() if isinstance(v, str) else v,
    "trim": lambda v: v.strip() if isinstance(v, str) else v,
    "toString": str,
    "toNumber": _to_number,
}

FILTER_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "contains": lambda a, b: a is not None and b in a,
    "in": lambda a, b: b is not None and a in b,
}


class DataNodeExecutor(NodeExecutor):
    """Executes MAPPER, FILTER, VALIDATOR, SPLITTER and MERGER nodes."""

    supported_types = (
        NodeType.MAPPER,
        NodeType.FILTER,
        NodeType.VALIDATOR,
        NodeType.SPLITTER,
        NodeType.MERGER,
    )

    def __init__(self, evaluator: ExpressionEvaluator | None = None):
        self.evaluator = evaluator or SafeExpressionEvaluator()

    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        config = node.parsed_config()
        logger.debug(f"Executing data node {node.key} ({node.type})")

        if node.type == NodeType.MAPPER:
            return self._execute_mapper(node, config, input_data)
        if node.type == NodeType.FILTER:
            return self._execute_filter(node, config, input_data, context)
        if node.type == NodeType.VALIDATOR:
            return self._execute_validator(node, config, input_data)
        if node.type == NodeType.SPLITTER:
            return self._execute_splitter(node, config, input_data)
        if node.type == NodeType.MERGER:
            return self._execute_merger(node, config, input_data, context)
        raise InvalidConfigError(
            f"{self.name} cannot execute node type '{node.type}'", node_key=node.key
        )

    def validate_config(self, node: NodeDescriptor) -> None:
        config = node.parsed_config()
        required = {
            NodeType.MAPPER: "mapping",
            NodeType.FILTER: "items",
            NodeType.VALIDATOR: "rules",
            NodeType.SPLITTER: "text",
            NodeType.MERGER: "sources",
        }.get(node.type)
        if required and required not in config:
            raise InvalidConfigError(
                f"{node.type} node '{node.key}' requires '{required}'", node_key=node.key
            )

    # === MAPPER ===

    def _execute_mapper(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        mapping = config.get("mapping")
        if not isinstance(mapping, dict):
            raise InvalidConfigError(
                f"MAPPER node '{node.key}' requires a 'mapping' object", node_key=node.key
            )

        output: dict[str, Any] = {}
        for target_key, rule in mapping.items():
            if isinstance(rule, str):
                if rule in input_data:
                    output[target_key] = input_data[rule]
            elif isinstance(rule, dict) and "source" in rule:
                value = input_data.get(rule["source"])
                transform = rule.get("transform")
                if transform:
                    value = self._apply_transform(node, value, transform)
                output[target_key] = value
            else:
                raise InvalidConfigError(
                    f"MAPPER node '{node.key}': rule for '{target_key}' must be a key or "
                    "{source, transform}",
                    node_key=node.key,
                )

        if config.get("preserveUnmapped", False):
            for key, value in input_data.items():
                output.setdefault(key, value)
        return output

    def _apply_transform(self, node: NodeDescriptor, value: Any, transform: str) -> Any:
        if value is None:
            return None
        func = TRANSFORMS.get(transform)
        if func is None:
            raise InvalidConfigError(
                f"MAPPER node '{node.key}': unknown transform '{transform}', "
                f"expected one of {sorted(TRANSFORMS)}",
                node_key=node.key,
            )
        try:
            return func(value)
        except ValueError as e:
            raise ExecutionFailure(
                f"MAPPER node '{node.key}': transform '{transform}' failed on {value!r}",
                node_key=node.key,
            ) from e

    # === FILTER ===

    def _execute_filter(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        items_key = config.get("items")
        if not isinstance(items_key, str) or not items_key:
            raise InvalidConfigError(
                f"FILTER node '{node.key}' requires 'items' naming an input field", node_key=node.key
            )
        items = input_data.get(items_key)
        if not isinstance(items, list | tuple):
            raise InvalidConfigError(
                f"FILTER node '{node.key}': input field '{items_key}' must be a list",
                node_key=node.key,
            )

        condition = config.get("condition")
        filtered = [item for item in items if self._matches(node, item, condition, context)]

        output = dict(input_data)
        output[items_key] = filtered
        output["_filtered_count"] = len(filtered)
        logger.info(f"Filter {node.key}: {len(items)} -> {len(filtered)} item(s)")
        return output

    def _matches(
        self, node: NodeDescriptor, item: Any, condition: Any, context: ExecutionContext
    ) -> bool:
        if condition is None:
            return True

        if isinstance(condition, str):
            extra = dict(item) if isinstance(item, dict) else {}
            extra["item"] = item
            return self.evaluator.evaluate(condition, build_bindings({}, context, extra))

        if isinstance(condition, dict) and "field" in condition:
            op_name = condition.get("operator", "eq")
            op = FILTER_OPERATORS.get(op_name)
            if op is None:
                raise InvalidConfigError(
                    f"FILTER node '{node.key}': unknown operator '{op_name}'", node_key=node.key
                )
            actual = item.get(condition["field"]) if isinstance(item, dict) else None
            try:
                return bool(op(actual, condition.get("value")))
            except TypeError:
                return False

        raise InvalidConfigError(
            f"FILTER node '{node.key}': 'condition' must be an expression or "
            "{field, operator, value}",
            node_key=node.key,
        )

    # === VALIDATOR ===

    def _execute_validator(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        rules = config.get("rules")
        if not isinstance(rules, list):
            raise InvalidConfigError(
                f"VALIDATOR node '{node.key}' requires a 'rules' list", node_key=node.key
            )

        errors: list[dict[str, str]] = []
        for rule in rules:
            if not isinstance(rule, dict) or "field" not in rule or "type" not in rule:
                raise InvalidConfigError(
                    f"VALIDATOR node '{node.key}': each rule needs 'field' and 'type'",
                    node_key=node.key,
                )
            message = self._check_rule(node, rule, input_data.get(rule["field"]))
            if message:
                errors.append({"field": rule["field"], "message": message})

        output = dict(input_data)
        output["_validation_errors"] = errors
        output["_validation_passed"] = not errors

        if errors:
            logger.warning(f"Validation failed at {node.key}: {errors}")
            if config.get("failOnError", False):
                raise ExecutionFailure(
                    f"VALIDATOR node '{node.key}' rejected input: "
                    + "; ".join(f"{e['field']}: {e['message']}" for e in errors),
                    node_key=node.key,
                    errors=errors,
                )
        return output

    def _check_rule(self, node: NodeDescriptor, rule: dict[str, Any], value: Any) -> str | None:
        rule_type = rule["type"]
        expected = rule.get("value")

        if rule_type == "required":
            if value is None or value == "":
                return "field is required"
        elif rule_type == "minLength":
            if isinstance(value, str) and len(value) < int(expected):
                return f"length must be at least {expected}"
        elif rule_type == "maxLength":
            if isinstance(value, str) and len(value) > int(expected):
                return f"length must be at most {expected}"
        elif rule_type == "pattern":
            try:
                if isinstance(value, str) and not re.fullmatch(str(expected), value):
                    return "format is invalid"
            except re.error as e:
                raise InvalidConfigError(
                    f"VALIDATOR node '{node.key}': bad pattern {expected!r}: {e}", node_key=node.key
                ) from e
        elif rule_type == "type":
            checks = {
                "string": lambda v: isinstance(v, str),
                "number": lambda v: isinstance(v, int | float) and not isinstance(v, bool),
                "boolean": lambda v: isinstance(v, bool),
                "object": lambda v: isinstance(v, dict),
                "array": lambda v: isinstance(v, list),
            }
            check = checks.get(str(expected))
            if check is None:
                raise InvalidConfigError(
                    f"VALIDATOR node '{node.key}': unknown type '{expected}'", node_key=node.key
                )
            if value is not None and not check(value):
                return f"must be of type {expected}"
        else:
            logger.warning(f"VALIDATOR node '{node.key}': ignoring unknown rule type '{rule_type}'")
        return None

    # === SPLITTER ===

    def _execute_splitter(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        text_key = config.get("text")
        if not isinstance(text_key, str) or not text_key:
            raise InvalidConfigError(
                f"SPLITTER node '{node.key}' requires 'text' naming an input field", node_key=node.key
            )
        text = input_data.get(text_key)
        if not isinstance(text, str):
            raise ExecutionFailure(
                f"SPLITTER node '{node.key}': input field '{text_key}' is not text",
                node_key=node.key,
            )

        delimiter = config.get("delimiter", DEFAULT_SPLIT_DELIMITER)
        if delimiter:
            parts = text.split(delimiter)
        else:
            max_length = int(config.get("maxLength", DEFAULT_SPLIT_LENGTH))
            if max_length <= 0:
                raise InvalidConfigError(
                    f"SPLITTER node '{node.key}': 'maxLength' must be positive", node_key=node.key
                )
            parts = [text[i : i + max_length] for i in range(0, len(text), max_length)]

        output = dict(input_data)
        output["parts"] = parts
        output["partCount"] = len(parts)
        return output

    # === MERGER ===

    def _execute_merger(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        sources = config.get("sources")
        if not isinstance(sources, list):
            raise InvalidConfigError(
                f"MERGER node '{node.key}' requires a 'sources' list", node_key=node.key
            )

        merged: dict[str, Any] = {}
        for source in sources:
            key = str(source)
            if key in input_data:
                value = input_data[key]
            else:
                # Fall back to the result of a node with that key
                value = context.get_result(key)
                if value is None:
                    continue
            if isinstance(value, dict):
                merged.update(value)
            else:
                merged[key] = value

        return merged
