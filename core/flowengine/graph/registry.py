"""
Node Executor Registry - the type tag -> executor dispatch table.

Built once at startup and validated eagerly: ``validate_snapshot`` rejects
every unknown type tag before a run starts, so resolution never fails in the
middle of a traversal.
"""

import logging
from collections.abc import Callable
from typing import Any

import httpx

from flowengine.errors import InvalidConfigError, UnsupportedNodeTypeError
from flowengine.graph.basic_nodes import BasicNodeExecutor
from flowengine.graph.control_nodes import ControlNodeExecutor
from flowengine.graph.data_nodes import DataNodeExecutor
from flowengine.graph.expression import ExpressionEvaluator
from flowengine.graph.node import NodeExecutor
from flowengine.graph.snapshot import FlowSnapshot
from flowengine.graph.tool_nodes import ToolNodeExecutor

logger = logging.getLogger(__name__)


class NodeExecutorRegistry:
    """
    Maps node type tags to executors.

    When two executors claim the same type, the one with the higher
    ``priority`` wins; on a tie the first registration is kept.

    Example:
        registry = NodeExecutorRegistry()
        registry.register(ControlNodeExecutor())
        registry.resolve("CONDITION")  # -> ControlNodeExecutor
    """

    def __init__(self, executors: list[NodeExecutor] | None = None):
        self._executors: dict[str, NodeExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: NodeExecutor) -> None:
        """Register an executor for every type tag it supports."""
        types = executor.get_supported_types()
        if not types:
            logger.warning(f"Executor {executor.name} declares no node types; ignoring")
            return

        for node_type in types:
            existing = self._executors.get(node_type)
            if existing is None:
                self._executors[node_type] = executor
                logger.debug(f"Registered {executor.name} for {node_type}")
            elif executor.priority > existing.priority:
                logger.info(
                    f"Executor {executor.name} (priority {executor.priority}) replaces "
                    f"{existing.name} (priority {existing.priority}) for {node_type}"
                )
                self._executors[node_type] = executor
            elif existing is not executor:
                logger.warning(
                    f"Executor {executor.name} ignored for {node_type}: "
                    f"{existing.name} already registered with priority {existing.priority}"
                )

    def unregister(self, node_type: str) -> NodeExecutor | None:
        return self._executors.pop(node_type, None)

    def resolve(self, node_type: str) -> NodeExecutor:
        """
        Return the executor for a type tag.

        Raises:
            UnsupportedNodeTypeError: If no executor handles the type
        """
        executor = self._executors.get(node_type)
        if executor is None:
            raise UnsupportedNodeTypeError(node_type)
        return executor

    def is_supported(self, node_type: str) -> bool:
        return node_type in self._executors

    def supported_types(self) -> list[str]:
        return sorted(self._executors)

    def executors(self) -> list[NodeExecutor]:
        """Distinct registered executors, in registration order."""
        seen: dict[int, NodeExecutor] = {}
        for executor in self._executors.values():
            seen.setdefault(id(executor), executor)
        return list(seen.values())

    def validate_snapshot(self, snapshot: FlowSnapshot, check_config: bool = False) -> None:
        """
        Check that every node in a snapshot can be dispatched.

        Args:
            snapshot: Snapshot to check
            check_config: Also run each executor's ``validate_config``

        Raises:
            UnsupportedNodeTypeError: Naming every unsupported type tag
            InvalidConfigError: If ``check_config`` and any config is invalid
        """
        unsupported = [node.type for node in snapshot.nodes if not self.is_supported(node.type)]
        if unsupported:
            raise UnsupportedNodeTypeError(
                unsupported,
                f"Snapshot '{snapshot.id}' uses unsupported node type(s): "
                f"{', '.join(sorted(set(unsupported)))}",
            )

        if not check_config:
            return

        problems = []
        for node in snapshot.nodes:
            try:
                self.resolve(node.type).validate_config(node)
            except InvalidConfigError as e:
                problems.append(f"{node.key}: {e.message}")
        if problems:
            raise InvalidConfigError(
                f"Snapshot '{snapshot.id}' has invalid node configuration: {'; '.join(problems)}",
                problems=problems,
            )

    def health_status(self) -> dict[str, Any]:
        """Health of every distinct executor, keyed by executor name."""
        status: dict[str, Any] = {}
        for executor in self.executors():
            try:
                healthy = executor.is_healthy()
            except Exception:
                logger.exception(f"Health check failed for {executor.name}")
                healthy = False
            status[executor.name] = {
                "healthy": healthy,
                "priority": executor.priority,
                "supportedTypes": executor.get_supported_types(),
            }
        return status


def create_default_registry(
    evaluator: ExpressionEvaluator | None = None,
    tools: dict[str, Callable[..., Any]] | None = None,
    http_client: httpx.AsyncClient | None = None,
    http_timeout_seconds: float = 30.0,
    extra_executors: list[NodeExecutor] | None = None,
) -> NodeExecutorRegistry:
    """
    Build a registry with the built-in executors.

    Covers terminal (START/END/INPUT/OUTPUT), control-flow, data-transform
    and tool-call (HTTP/TOOL) nodes. AI nodes (LLM, RETRIEVER, ...) have no
    built-in executor: pass them in ``extra_executors``.
    """
    registry = NodeExecutorRegistry(
        [
            BasicNodeExecutor(),
            ControlNodeExecutor(evaluator=evaluator),
            DataNodeExecutor(evaluator=evaluator),
            ToolNodeExecutor(
                tools=tools,
                http_client=http_client,
                default_timeout_seconds=http_timeout_seconds,
            ),
        ]
    )
    for executor in extra_executors or []:
        registry.register(executor)
    return registry
