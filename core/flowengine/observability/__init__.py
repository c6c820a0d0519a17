"""
Observability module: structured logging with run-scoped trace context.

- Trace context propagation via ContextVar
- JSON log lines for production
- Human-readable logging for development
"""

from flowengine.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
