"""Run-log sinks and the on-disk run log. The run service lives in ``flowengine.runtime.flow_runtime``."""

from flowengine.runtime.run_log import InMemoryRunLogSink, RunLogEntry, RunLogSink
from flowengine.runtime.runtime_log_schemas import NodeAttemptLog, RunDetailsLog, RunSummaryLog
from flowengine.runtime.runtime_log_store import RuntimeLogStore
from flowengine.runtime.runtime_logger import RuntimeLogger

__all__ = [
    "RunLogSink",
    "RunLogEntry",
    "InMemoryRunLogSink",
    "RuntimeLogger",
    "RuntimeLogStore",
    "NodeAttemptLog",
    "RunDetailsLog",
    "RunSummaryLog",
]
