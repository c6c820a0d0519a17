"""
Terminal-capability executor: START, END, INPUT, OUTPUT.

START seeds the run (and optional global variables), END shapes the run's
output, INPUT and OUTPUT move single fields in and out of the payload.
"""

import json
import logging
import time
from typing import Any

from flowengine.errors import ExecutionFailure, InvalidConfigError
from flowengine.graph.context import ExecutionContext
from flowengine.graph.node import NodeExecutor
from flowengine.graph.snapshot import NodeDescriptor, NodeType

logger = logging.getLogger(__name__)

DATA_TYPES = ("string", "number", "integer", "boolean", "object", "array")


def coerce_value(value: Any, data_type: str, field_name: str) -> Any:
    """Coerce a payload value to one of DATA_TYPES. Raises ExecutionFailure on mismatch."""
    try:
        if data_type == "string":
            return value if isinstance(value, str) else json.dumps(value, default=str)
        if data_type == "number":
            return value if isinstance(value, int | float) and not isinstance(value, bool) else float(value)
        if data_type == "integer":
            return int(value)
        if data_type == "boolean":
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("true", "1", "yes"):
                    return True
                if lowered in ("false", "0", "no", ""):
                    return False
                raise ValueError(f"not a boolean: {value!r}")
            return bool(value)
        if data_type in ("object", "array"):
            parsed = json.loads(value) if isinstance(value, str) else value
            expected = dict if data_type == "object" else list
            if not isinstance(parsed, expected):
                raise ValueError(f"expected {data_type}, got {type(parsed).__name__}")
            return parsed
    except (TypeError, ValueError) as e:
        raise ExecutionFailure(
            f"Field '{field_name}' cannot be converted to {data_type}: {e}", field=field_name
        ) from e
    raise InvalidConfigError(f"Unknown dataType '{data_type}', expected one of {DATA_TYPES}")


class BasicNodeExecutor(NodeExecutor):
    """Executes START, END, INPUT and OUTPUT nodes."""

    supported_types = (NodeType.START, NodeType.END, NodeType.INPUT, NodeType.OUTPUT)

    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        config = node.parsed_config()

        if node.type == NodeType.START:
            return self._execute_start(node, config, input_data, context)
        if node.type == NodeType.END:
            return self._execute_end(config, input_data, context)
        if node.type == NodeType.INPUT:
            return self._execute_input(node, config, input_data)
        if node.type == NodeType.OUTPUT:
            return self._execute_output(node, config, input_data, context)
        raise InvalidConfigError(
            f"{self.name} cannot execute node type '{node.type}'", node_key=node.key
        )

    def validate_config(self, node: NodeDescriptor) -> None:
        config = node.parsed_config()
        if node.type == NodeType.START:
            init_variables = config.get("initVariables")
            if init_variables is not None and not isinstance(init_variables, dict):
                raise InvalidConfigError(
                    f"START node '{node.key}': 'initVariables' must be an object", node_key=node.key
                )
        elif node.type == NodeType.END:
            fields = config.get("outputFields")
            if fields is not None and not isinstance(fields, list):
                raise InvalidConfigError(
                    f"END node '{node.key}': 'outputFields' must be a list", node_key=node.key
                )
        elif node.type in (NodeType.INPUT, NodeType.OUTPUT):
            self._field_keys(node, config)
            data_type = config.get("dataType")
            if data_type is not None and data_type not in DATA_TYPES:
                raise InvalidConfigError(
                    f"Node '{node.key}': unknown dataType '{data_type}'", node_key=node.key
                )

    def _execute_start(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        init_variables = config.get("initVariables") or {}
        if not isinstance(init_variables, dict):
            raise InvalidConfigError(
                f"START node '{node.key}': 'initVariables' must be an object", node_key=node.key
            )
        if init_variables:
            context.set_globals(init_variables, node_key=node.key)

        output = dict(input_data)
        output["_node_type"] = NodeType.START.value
        output["_execution_id"] = context.run_id
        output["_started_at"] = int(time.time() * 1000)
        logger.info(f"Flow started at node {node.key} with {len(input_data)} input field(s)")
        return output

    def _execute_end(
        self,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        output_fields = config.get("outputFields")
        if output_fields:
            output = {name: input_data[name] for name in output_fields if name in input_data}
        else:
            output = dict(input_data)

        output["_execution_metrics"] = context.summary().to_dict()
        output["_completed_at"] = int(time.time() * 1000)
        return output

    def _execute_input(
        self, node: NodeDescriptor, config: dict[str, Any], input_data: dict[str, Any]
    ) -> dict[str, Any]:
        source_key, target_key = self._field_keys(node, config)
        output = dict(input_data)

        if source_key not in input_data or input_data[source_key] is None:
            if "defaultValue" in config:
                output[target_key] = config["defaultValue"]
                return output
            if config.get("required", False):
                raise ExecutionFailure(
                    f"INPUT node '{node.key}': required field '{source_key}' is missing",
                    node_key=node.key,
                )
            return output

        value = input_data[source_key]
        data_type = config.get("dataType")
        output[target_key] = coerce_value(value, data_type, source_key) if data_type else value
        return output

    def _execute_output(
        self,
        node: NodeDescriptor,
        config: dict[str, Any],
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        source_key, target_key = self._field_keys(node, config)
        output = dict(input_data)
        if source_key not in input_data:
            logger.warning(f"OUTPUT node '{node.key}': field '{source_key}' not present in input")
            return output

        value = input_data[source_key]
        output[target_key] = value
        if config.get("global", False):
            context.set_global(target_key, value, node_key=node.key)
        return output

    @staticmethod
    def _field_keys(node: NodeDescriptor, config: dict[str, Any]) -> tuple[str, str]:
        source_key = config.get("sourceKey") or config.get("targetKey")
        target_key = config.get("targetKey") or source_key
        if not isinstance(source_key, str) or not source_key:
            raise InvalidConfigError(
                f"{node.type} node '{node.key}' requires 'sourceKey' or 'targetKey'",
                node_key=node.key,
            )
        return source_key, str(target_key)
