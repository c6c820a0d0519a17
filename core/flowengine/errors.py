"""
Error taxonomy for flow execution.

Node-level errors are absorbed by the FlowExecutor into node status and the
execution context. Only run-creation errors (NotFoundError,
UnsupportedNodeTypeError, and InvalidConfigError raised while validating a
snapshot) reach the caller.

    FlowError
    ├── InvalidConfigError        not retried, terminal for the node
    ├── UnsupportedNodeTypeError  registry resolution failure
    ├── ExecutionFailure          retried per the node's retry policy
    │   ├── ExpressionError
    │   └── NodeTimeoutError
    ├── FlowTimeoutError          run-level timeout, always terminal
    └── NotFoundError             missing snapshot or node key
"""

from typing import Any


class FlowError(Exception):
    """Base class for all flow engine errors."""

    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": self.message, **self.details}


class InvalidConfigError(FlowError):
    """Malformed node configuration or snapshot structure."""


class UnsupportedNodeTypeError(FlowError):
    """No executor is registered for a node type tag."""

    def __init__(self, node_types: str | list[str], message: str | None = None):
        if isinstance(node_types, str):
            node_types = [node_types]
        self.node_types = sorted(set(node_types))
        super().__init__(
            message or f"Unsupported node type(s): {', '.join(self.node_types)}",
            node_types=self.node_types,
        )


class ExecutionFailure(FlowError):
    """An executor or one of its collaborators failed while doing a node's work."""

    retryable = True


class ExpressionError(ExecutionFailure):
    """An expression parsed but could not be evaluated against its bindings."""


class NodeTimeoutError(ExecutionFailure):
    """A single node attempt exceeded its per-attempt timeout."""


class FlowTimeoutError(FlowError):
    """The run exceeded its overall timeout."""


class NotFoundError(FlowError):
    """A snapshot id or a referenced node key does not exist."""
