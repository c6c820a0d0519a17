"""
Control-flow node executor: CONDITION, LOOP, SWITCH, PARALLEL.

These nodes never call out to collaborators. Each one copies its input and
adds underscore-prefixed keys that the FlowExecutor reads to route the run:

- CONDITION  → ``_condition_result`` picks the edge tagged "true" or "false"
- SWITCH     → ``_selected_branch`` picks the edge tagged with that branch
- PARALLEL   → ``_parallel_execution`` marks the fan-out; the executor runs
  every outgoing edge concurrently and joins at the convergence node
- LOOP       → ``_loop_results`` / ``_loop_count`` for downstream nodes;
  loops do not execute a sub-flow per iteration

Configuration problems raise InvalidConfigError, which fails the node
without retries.
"""

import logging
import time
from collections.abc import Mapping
from typing import Any

from flowengine.errors import InvalidConfigError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.expression import (
    ExpressionEvaluator,
    SafeExpressionEvaluator,
    stringify_value,
)
from flowengine.graph.node import NodeExecutor
from flowengine.graph.snapshot import NodeDescriptor, NodeType

logger = logging.getLogger(__name__)

GLOBAL_BINDING_PREFIX = "ctx_"
DEFAULT_MAX_ITERATIONS = 100
DEFAULT_BRANCH = "default"

LOOP_TYPES = ("forEach", "while", "range")


def build_bindings(
    input_data: Mapping[str, Any],
    context: ExecutionContext,
    extra: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Input fields by name plus every global variable as ``ctx_<name>``."""
    bindings = dict(input_data)
    for key, value in context.get_all_globals().items():
        bindings[f"{GLOBAL_BINDING_PREFIX}{key}"] = value
    if extra:
        bindings.update(extra)
    return bindings


def _require_int(config: dict[str, Any], key: str, node_key: str, default: int | None = None) -> int:
    value = config.get(key, default)
    if value is None:
        raise InvalidConfigError(f"Node '{node_key}' requires '{key}'", node_key=node_key)
    if isinstance(value, bool) or not isinstance(value, int | float) or int(value) != value:
        raise InvalidConfigError(
            f"Node '{node_key}': '{key}' must be an integer, got {value!r}", node_key=node_key
        )
    return int(value)


class ControlNodeExecutor(NodeExecutor):
    """
    Executes control-flow nodes.

    Args:
        evaluator: Expression evaluator for CONDITION and while-loops.
            Defaults to SafeExpressionEvaluator; pass a
            FallbackExpressionEvaluator to run without real evaluation.
    """

    supported_types = (NodeType.CONDITION, NodeType.LOOP, NodeType.SWITCH, NodeType.PARALLEL)

    def __init__(self, evaluator: ExpressionEvaluator | None = None):
        self.evaluator = evaluator or SafeExpressionEvaluator()

    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        config = node.parsed_config()
        logger.debug(f"Executing control node {node.key} ({node.type})")

        if node.type == NodeType.CONDITION:
            return self._execute_condition(node, config, input_data, context)
        if node.type == NodeType.LOOP:
            return self._execute_loop(node, config, input_data, context)
        if node.type == NodeType.SWITCH:
            return self._execute_switch(node, config, input_data)
        if node.type == NodeType.PARALLEL:
            return self._execute_parallel(node, config, input_data)
        raise InvalidConfigError(
            f"{self.name} cannot execute node type '{node.type}'", node_key=node.key
        )

    def validate_config(self, node: NodeDescriptor) -> None:
        config = node.parsed_config()
        if node.type == NodeType.CONDITION:
            self._compile(self._require_expression(node, config, "expression"))
        elif node.type == NodeType.SWITCH:
            self._require_switch_key(node, config)
            self._branches(node, config)
        elif node.type == NodeType.LOOP:
            loop_type = self._loop_type(node, config)
            if loop_type == "while":
                self._compile(self._require_expression(node, config, "condition"))
            elif loop_type == "range":
                _require_int(config, "end", node.key)

    # === CONDITION ===

    def _execute_condition(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        expression = self._require_expression(node, config, "expression")
        result = self.evaluator.evaluate(expression, build_bindings(input_data, context))

        output = dict(input_data)
        output["_condition_result"] = bool(result)
        output["_condition_expression"] = expression
        output["_evaluated_at"] = int(time.time() * 1000)

        logger.info(f"Condition {node.key}: {expression} -> {bool(result)}")
        return output

    # === LOOP ===

    def _execute_loop(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        loop_type = self._loop_type(node, config)
        output = dict(input_data)

        if loop_type == "forEach":
            self._for_each(node, config, input_data, output)
        elif loop_type == "while":
            self._while(node, config, input_data, context, output)
        else:
            self._range(node, config, output)

        logger.info(f"Loop {node.key} ({loop_type}): {output['_loop_count']} iteration(s)")
        return output

    def _for_each(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        output: dict[str, Any],
    ) -> None:
        items_key = config.get("items")
        if not isinstance(items_key, str) or not items_key:
            raise InvalidConfigError(
                f"forEach loop '{node.key}' requires 'items' naming an input field",
                node_key=node.key,
            )
        items = input_data.get(items_key)
        if not isinstance(items, list | tuple):
            raise InvalidConfigError(
                f"forEach loop '{node.key}': input field '{items_key}' must be a list, "
                f"got {type(items).__name__}",
                node_key=node.key,
            )
        loop_var = config.get("loopVar") or "item"

        total = len(items)
        iterations = [
            {loop_var: item, "_loop_index": index, "_loop_total": total}
            for index, item in enumerate(items)
        ]
        output["_loop_results"] = list(items)
        output["_loop_iterations"] = iterations
        output["_loop_count"] = total

    def _while(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
        output: dict[str, Any],
    ) -> None:
        condition = self._require_expression(node, config, "condition")
        max_iterations = _require_int(config, "maxIterations", node.key, DEFAULT_MAX_ITERATIONS)
        if max_iterations < 0:
            raise InvalidConfigError(
                f"while loop '{node.key}': 'maxIterations' must be >= 0", node_key=node.key
            )

        results: list[dict[str, Any]] = []
        iteration = 0
        while iteration < max_iterations:
            bindings = build_bindings(input_data, context, {"_loop_index": iteration})
            if not self.evaluator.evaluate(condition, bindings):
                break
            results.append({"iteration": iteration, "timestamp": int(time.time() * 1000)})
            iteration += 1
        else:
            logger.warning(
                f"while loop '{node.key}' stopped at maxIterations={max_iterations}"
            )

        output["_loop_results"] = results
        output["_loop_count"] = iteration

    def _range(self, node: NodeDescriptor, config: dict[str, Any], output: dict[str, Any]) -> None:
        start = _require_int(config, "start", node.key, 0)
        end = _require_int(config, "end", node.key)
        step = _require_int(config, "step", node.key, 1)
        if step == 0:
            raise InvalidConfigError(f"range loop '{node.key}': 'step' must not be 0", node_key=node.key)

        results = [{"index": i, "value": i} for i in range(start, end, step)]
        output["_loop_results"] = results
        output["_loop_count"] = len(results)

    def _loop_type(self, node: NodeDescriptor, config: dict[str, Any]) -> str:
        loop_type = config.get("loopType") or "forEach"
        if loop_type not in LOOP_TYPES:
            raise InvalidConfigError(
                f"Loop '{node.key}' has unsupported loopType '{loop_type}', expected one of {LOOP_TYPES}",
                node_key=node.key,
            )
        return loop_type

    # === SWITCH ===

    def _execute_switch(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        switch_key = self._require_switch_key(node, config)
        switch_value = input_data.get(switch_key)

        selected = DEFAULT_BRANCH
        for branch in self._branches(node, config):
            if stringify_value(branch.get("value")) == stringify_value(switch_value):
                selected = str(branch.get("name"))
                break

        output = dict(input_data)
        output["_selected_branch"] = selected
        output["_switch_value"] = switch_value
        output["_switch_key"] = switch_key

        logger.info(f"Switch {node.key}: {switch_key}={switch_value!r} -> branch '{selected}'")
        return output

    def _require_switch_key(self, node: NodeDescriptor, config: dict[str, Any]) -> str:
        switch_key = config.get("switchOn")
        if not isinstance(switch_key, str) or not switch_key:
            raise InvalidConfigError(f"Switch '{node.key}' requires 'switchOn'", node_key=node.key)
        return switch_key

    def _branches(self, node: NodeDescriptor, config: dict[str, Any]) -> list[dict[str, Any]]:
        branches = config.get("branches") or []
        if not isinstance(branches, list) or not all(
            isinstance(b, dict) and b.get("name") not in (None, "") for b in branches
        ):
            raise InvalidConfigError(
                f"Switch '{node.key}': 'branches' must be a list of {{value, name}} objects",
                node_key=node.key,
            )
        return branches

    # === PARALLEL ===

    def _execute_parallel(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        output = dict(input_data)
        output["_parallel_execution"] = True
        output["_parallel_config"] = config
        output["_parallel_node"] = node.key
        logger.debug(f"Parallel node {node.key} marked for fan-out")
        return output

    # === helpers ===

    def _require_expression(self, node: NodeDescriptor, config: dict[str, Any], key: str) -> str:
        expression = config.get(key)
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidConfigError(
                f"{node.type} node '{node.key}' requires a string '{key}'", node_key=node.key
            )
        return expression

    def _compile(self, expression: str) -> None:
        if isinstance(self.evaluator, SafeExpressionEvaluator):
            self.evaluator.compile(expression)
