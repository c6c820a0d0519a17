"""
Node executor protocol.

A NodeExecutor runs every node whose type tag it declares. The FlowExecutor
never looks inside a node: it resolves the executor from the registry, calls
``execute`` with the node's accumulated input and the run's context, and
treats the returned dict as the node's result.

Errors raised by ``execute`` decide what happens next:
- InvalidConfigError fails the node immediately
- anything else is an execution failure and is retried per the node's
  retry policy
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from typing import Any, ClassVar

from flowengine.errors import ExecutionFailure
from flowengine.graph.context import ExecutionContext
from flowengine.graph.snapshot import NodeDescriptor

logger = logging.getLogger(__name__)


class NodeExecutor(ABC):
    """
    Base class for node executors.

    Subclasses set ``supported_types`` and implement ``execute``. Executors
    are shared across runs, so they must keep all per-run state in the
    ExecutionContext.

    Example:
        class EchoExecutor(NodeExecutor):
            supported_types = ("ECHO",)

            async def execute(self, node, input_data, context):
                return dict(input_data)
    """

    supported_types: ClassVar[tuple[str, ...]] = ()
    priority: int = 0

    @property
    def name(self) -> str:
        return type(self).__name__

    def get_supported_types(self) -> list[str]:
        return list(self.supported_types)

    @abstractmethod
    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        """
        Execute a node.

        Args:
            node: The node being executed
            input_data: Initial payload merged with upstream results (a private copy)
            context: The run's execution context

        Returns:
            The node's result payload
        """

    def validate_config(self, node: NodeDescriptor) -> None:
        """Check a node's configuration ahead of execution. Raises InvalidConfigError."""
        node.parsed_config()

    def is_healthy(self) -> bool:
        return True


class FunctionNodeExecutor(NodeExecutor):
    """
    Adapt a plain callable into a NodeExecutor.

    This is how AI, retrieval and other externally implemented node families
    plug into the engine without subclassing. The callable receives
    ``(node, input_data, context)`` and returns a dict; sync callables run
    in a worker thread so they never block the event loop.

    Example:
        async def call_llm(node, input_data, context):
            config = node.parsed_config()
            answer = await my_client.complete(config["prompt"].format(**input_data))
            return {**input_data, "answer": answer}

        registry.register(FunctionNodeExecutor(call_llm, ["LLM", "CHAT"]))
    """

    def __init__(
        self,
        func: Callable[..., Any],
        node_types: Iterable[str],
        priority: int = 0,
        name: str | None = None,
    ):
        self.func = func
        self.supported_types = tuple(node_types)
        self.priority = priority
        self._name = name or getattr(func, "__name__", "function")

    @property
    def name(self) -> str:
        return f"FunctionNodeExecutor({self._name})"

    async def execute(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
    ) -> dict[str, Any]:
        if inspect.iscoroutinefunction(self.func):
            result = await self.func(node, input_data, context)
        else:
            result = await asyncio.to_thread(self.func, node, input_data, context)

        if result is None:
            return {}
        if not isinstance(result, dict):
            raise ExecutionFailure(
                f"{self.name} returned {type(result).__name__} for node '{node.key}', expected dict",
                node_key=node.key,
            )
        return result
