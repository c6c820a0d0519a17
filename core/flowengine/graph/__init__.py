"""Graph structures: snapshots, execution context, node executors and the flow executor."""

from flowengine.graph.basic_nodes import BasicNodeExecutor
from flowengine.graph.builder import SnapshotBuilder
from flowengine.graph.context import (
    ContextSummary,
    ExecutionContext,
    GlobalChange,
    NodeFailure,
    NodeStatus,
)
from flowengine.graph.control_nodes import ControlNodeExecutor
from flowengine.graph.data_nodes import DataNodeExecutor
from flowengine.graph.executor import ExecutionResult, FlowExecutor
from flowengine.graph.expression import (
    ExpressionEvaluator,
    FallbackExpressionEvaluator,
    SafeExpressionEvaluator,
    create_evaluator,
)
from flowengine.graph.node import FunctionNodeExecutor, NodeExecutor
from flowengine.graph.registry import NodeExecutorRegistry, create_default_registry
from flowengine.graph.snapshot import (
    EdgeCondition,
    EdgeDescriptor,
    FlowSnapshot,
    NodeDescriptor,
    NodeType,
    RetryPolicy,
)
from flowengine.graph.tool_nodes import ToolNodeExecutor

__all__ = [
    # Snapshot
    "FlowSnapshot",
    "NodeDescriptor",
    "EdgeDescriptor",
    "EdgeCondition",
    "NodeType",
    "RetryPolicy",
    "SnapshotBuilder",
    # Context
    "ExecutionContext",
    "NodeStatus",
    "NodeFailure",
    "GlobalChange",
    "ContextSummary",
    # Executors
    "NodeExecutor",
    "FunctionNodeExecutor",
    "NodeExecutorRegistry",
    "create_default_registry",
    "BasicNodeExecutor",
    "ControlNodeExecutor",
    "DataNodeExecutor",
    "ToolNodeExecutor",
    # Expressions
    "ExpressionEvaluator",
    "SafeExpressionEvaluator",
    "FallbackExpressionEvaluator",
    "create_evaluator",
    # Orchestration
    "FlowExecutor",
    "ExecutionResult",
]
