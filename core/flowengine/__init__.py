"""
Flow engine - executes versioned, immutable flow snapshots.

A snapshot is a DAG of typed nodes. The FlowExecutor walks it, dispatching
each node to the executor registered for its type, running independent
branches concurrently and applying per-node retry policies. The FlowRuntime
in front of it loads snapshots from a store and tracks in-flight runs.
"""

from flowengine.config import EngineConfig
from flowengine.errors import (
    ExecutionFailure,
    ExpressionError,
    FlowError,
    FlowTimeoutError,
    InvalidConfigError,
    NodeTimeoutError,
    NotFoundError,
    UnsupportedNodeTypeError,
)
from flowengine.graph import (
    EdgeDescriptor,
    ExecutionContext,
    ExecutionResult,
    FlowExecutor,
    FlowSnapshot,
    FunctionNodeExecutor,
    NodeDescriptor,
    NodeExecutor,
    NodeExecutorRegistry,
    NodeStatus,
    NodeType,
    SnapshotBuilder,
    create_default_registry,
)
from flowengine.runtime import InMemoryRunLogSink, RunLogSink, RuntimeLogger, RuntimeLogStore
from flowengine.runtime.flow_runtime import FlowRuntime
from flowengine.schemas import FlowRun, RunFailure, RunStatus
from flowengine.storage import FileSnapshotStore, InMemorySnapshotStore, SnapshotLoader

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "EngineConfig",
    # Errors
    "FlowError",
    "InvalidConfigError",
    "UnsupportedNodeTypeError",
    "ExecutionFailure",
    "ExpressionError",
    "NodeTimeoutError",
    "FlowTimeoutError",
    "NotFoundError",
    # Snapshot model
    "FlowSnapshot",
    "NodeDescriptor",
    "EdgeDescriptor",
    "NodeType",
    "SnapshotBuilder",
    # Execution
    "ExecutionContext",
    "NodeStatus",
    "NodeExecutor",
    "FunctionNodeExecutor",
    "NodeExecutorRegistry",
    "create_default_registry",
    "FlowExecutor",
    "ExecutionResult",
    "FlowRuntime",
    # Runs
    "FlowRun",
    "RunFailure",
    "RunStatus",
    # Storage and run logs
    "SnapshotLoader",
    "InMemorySnapshotStore",
    "FileSnapshotStore",
    "RunLogSink",
    "InMemoryRunLogSink",
    "RuntimeLogger",
    "RuntimeLogStore",
]
