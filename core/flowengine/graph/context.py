"""
Execution Context - per-run mutable state shared by every node of the run.

Holds node results, node statuses, retry counters, global variables, timing
metrics and the failure chain. Node tasks may run concurrently (and sync
collaborators run in worker threads), so every method takes the same
re-entrant lock, and every read returns a deep copy.

Node status state machine:

    PENDING → RUNNING → {COMPLETED | FAILED}
    FAILED → RETRYING → RUNNING
    any non-terminal → SKIPPED
"""

import copy
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from flowengine.graph.snapshot import FlowSnapshot

logger = logging.getLogger(__name__)

DEFAULT_SLOW_EXECUTION_MS = 5000


class NodeStatus(StrEnum):
    """Status of a single node within a run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    SKIPPED = "SKIPPED"


_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.SKIPPED}),
    NodeStatus.RUNNING: frozenset(
        {NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.RETRYING, NodeStatus.SKIPPED}
    ),
    NodeStatus.FAILED: frozenset({NodeStatus.RETRYING}),
    NodeStatus.RETRYING: frozenset({NodeStatus.RUNNING, NodeStatus.FAILED, NodeStatus.SKIPPED}),
    NodeStatus.COMPLETED: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
}


@dataclass
class NodeFailure:
    """One entry in the failure chain of a run."""

    node_key: str
    node_type: str
    error_type: str
    message: str
    retry_count: int
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GlobalChange:
    """Record of a global variable write."""

    key: str
    old_value: Any
    new_value: Any
    node_key: str | None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ContextSummary:
    """Point-in-time summary of a run's progress."""

    run_id: str
    snapshot_id: str | None
    total_nodes: int
    completed: int
    failed: int
    retrying: int
    skipped: int
    total_retries: int
    progress: float
    global_variable_count: int
    elapsed_ms: int
    average_node_execution_ms: float

    @property
    def is_completed(self) -> bool:
        return self.total_nodes > 0 and self.completed + self.failed + self.skipped >= self.total_nodes

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.failed
        return self.completed / finished if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": self.run_id,
            "snapshotId": self.snapshot_id,
            "totalNodes": self.total_nodes,
            "completed": self.completed,
            "failed": self.failed,
            "retrying": self.retrying,
            "skipped": self.skipped,
            "totalRetries": self.total_retries,
            "progress": self.progress,
            "globalVariableCount": self.global_variable_count,
            "elapsedMs": self.elapsed_ms,
            "averageNodeExecutionMs": self.average_node_execution_ms,
            "successRate": self.success_rate,
            "isCompleted": self.is_completed,
        }


class ExecutionContext:
    """
    Per-run state store passed explicitly to every executor call.

    Example:
        context = ExecutionContext(run_id="run_1", snapshot=snapshot)
        context.set_global("tenant", "acme")
        context.record_result("start", {"x": 5})
        context.summary().progress  # 1 / snapshot.node_count()
    """

    def __init__(
        self,
        run_id: str,
        snapshot: FlowSnapshot | None = None,
        slow_execution_ms: int = DEFAULT_SLOW_EXECUTION_MS,
        max_history: int = 1000,
    ):
        self.run_id = run_id
        self.snapshot = snapshot
        self.slow_execution_ms = slow_execution_ms
        self.started_at = time.time()

        self._results: dict[str, dict[str, Any]] = {}
        self._statuses: dict[str, NodeStatus] = {}
        self._retry_counts: dict[str, int] = {}
        self._globals: dict[str, Any] = {}
        self._metrics: dict[str, float] = {}
        self._custom_metrics: dict[str, Any] = {}
        self._failures: list[NodeFailure] = []

        self._global_history: list[GlobalChange] = []
        self._max_history = max_history

        self._lock = threading.RLock()

    @property
    def snapshot_id(self) -> str | None:
        return self.snapshot.id if self.snapshot else None

    # === RESULTS ===

    def record_result(self, node_key: str, payload: dict[str, Any]) -> None:
        """Store a node's result and mark it COMPLETED."""
        if self.snapshot is not None and not self.snapshot.contains_node(node_key):
            logger.warning(f"Recording result for node '{node_key}' not present in snapshot")
        stored = copy.deepcopy(payload)
        with self._lock:
            self._results[node_key] = stored
            self._transition(node_key, NodeStatus.COMPLETED)

    def get_result(self, node_key: str) -> dict[str, Any] | None:
        with self._lock:
            result = self._results.get(node_key)
            return copy.deepcopy(result) if result is not None else None

    def has_result(self, node_key: str) -> bool:
        with self._lock:
            return node_key in self._results

    def get_all_results(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._results)

    # === STATUS ===

    def set_status(self, node_key: str, status: NodeStatus) -> None:
        with self._lock:
            self._transition(node_key, NodeStatus(status))

    def get_status(self, node_key: str) -> NodeStatus:
        with self._lock:
            return self._statuses.get(node_key, NodeStatus.PENDING)

    def get_all_statuses(self) -> dict[str, NodeStatus]:
        """Status of every snapshot node (PENDING when unset) plus any extra keys seen."""
        with self._lock:
            statuses = {}
            if self.snapshot is not None:
                statuses = {key: NodeStatus.PENDING for key in self.snapshot.node_keys()}
            statuses.update(self._statuses)
            return statuses

    def count_by_status(self, status: NodeStatus) -> int:
        return sum(1 for s in self.get_all_statuses().values() if s == status)

    def _transition(self, node_key: str, status: NodeStatus) -> None:
        current = self._statuses.get(node_key, NodeStatus.PENDING)
        if current != status and status not in _ALLOWED_TRANSITIONS[current]:
            logger.warning(f"Unexpected status transition for '{node_key}': {current} -> {status}")
        self._statuses[node_key] = status

    # === RETRIES ===

    def increment_retry(self, node_key: str) -> int:
        """Bump the retry counter and mark the node RETRYING. Returns the new count."""
        with self._lock:
            count = self._retry_counts.get(node_key, 0) + 1
            self._retry_counts[node_key] = count
            self._transition(node_key, NodeStatus.RETRYING)
            return count

    def get_retry_count(self, node_key: str) -> int:
        with self._lock:
            return self._retry_counts.get(node_key, 0)

    def get_retry_counts(self) -> dict[str, int]:
        with self._lock:
            return dict(self._retry_counts)

    def total_retries(self) -> int:
        with self._lock:
            return sum(self._retry_counts.values())

    # === FAILURES ===

    def record_failure(self, node_key: str, node_type: str, error: BaseException) -> NodeFailure:
        """Append a terminal node failure to the run's failure chain."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        with self._lock:
            failure = NodeFailure(
                node_key=node_key,
                node_type=node_type,
                error_type=type(error).__name__,
                message=message,
                retry_count=self._retry_counts.get(node_key, 0),
            )
            self._failures.append(failure)
            return copy.deepcopy(failure)

    def get_failures(self) -> list[NodeFailure]:
        with self._lock:
            return copy.deepcopy(self._failures)

    # === GLOBAL VARIABLES ===

    def set_global(self, key: str, value: Any, node_key: str | None = None) -> None:
        """Set a run-scoped variable. Concurrent writers: last write wins."""
        stored = copy.deepcopy(value)
        with self._lock:
            old_value = self._globals.get(key)
            self._globals[key] = stored
            self._global_history.append(
                GlobalChange(key=key, old_value=old_value, new_value=stored, node_key=node_key)
            )
            if len(self._global_history) > self._max_history:
                self._global_history = self._global_history[-self._max_history :]

    def set_globals(self, values: dict[str, Any], node_key: str | None = None) -> None:
        with self._lock:
            for key, value in values.items():
                self.set_global(key, value, node_key=node_key)

    def get_global(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._globals:
                return default
            return copy.deepcopy(self._globals[key])

    def get_all_globals(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._globals)

    def get_global_history(self, limit: int = 100) -> list[GlobalChange]:
        with self._lock:
            return copy.deepcopy(self._global_history[-limit:])

    # === METRICS ===

    def record_metric(self, name: str, duration_ms: float) -> None:
        """Store a timing sample as ``{name}_duration``; flag slow samples."""
        with self._lock:
            self._metrics[f"{name}_duration"] = duration_ms
            if duration_ms > self.slow_execution_ms:
                self._metrics[f"{name}_slow_execution"] = 1
        if duration_ms > self.slow_execution_ms:
            logger.warning(
                f"Slow execution detected: {name} took {duration_ms:.0f}ms "
                f"(threshold {self.slow_execution_ms}ms)"
            )

    def record_custom_metric(self, name: str, value: Any) -> None:
        with self._lock:
            self._custom_metrics[name] = copy.deepcopy(value)

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {**copy.deepcopy(self._custom_metrics), **self._metrics}

    def slow_nodes(self) -> list[str]:
        suffix = "_slow_execution"
        with self._lock:
            return [name[: -len(suffix)] for name in self._metrics if name.endswith(suffix)]

    def average_node_execution_ms(self) -> float:
        with self._lock:
            durations = [v for k, v in self._metrics.items() if k.endswith("_duration")]
        return sum(durations) / len(durations) if durations else 0.0

    def elapsed_ms(self) -> int:
        return int((time.time() - self.started_at) * 1000)

    # === SUMMARY ===

    def summary(self) -> ContextSummary:
        statuses = self.get_all_statuses()
        counts = {status: 0 for status in NodeStatus}
        for status in statuses.values():
            counts[status] += 1

        total_nodes = self.snapshot.node_count() if self.snapshot else 0
        progress = counts[NodeStatus.COMPLETED] / total_nodes if total_nodes else 0.0

        with self._lock:
            global_count = len(self._globals)

        return ContextSummary(
            run_id=self.run_id,
            snapshot_id=self.snapshot_id,
            total_nodes=total_nodes,
            completed=counts[NodeStatus.COMPLETED],
            failed=counts[NodeStatus.FAILED],
            retrying=counts[NodeStatus.RETRYING],
            skipped=counts[NodeStatus.SKIPPED],
            total_retries=self.total_retries(),
            progress=progress,
            global_variable_count=global_count,
            elapsed_ms=self.elapsed_ms(),
            average_node_execution_ms=self.average_node_execution_ms(),
        )

    def detailed_report(self) -> dict[str, Any]:
        """Summary plus per-node statuses, retries, metrics, globals and failures."""
        return {
            "summary": self.summary().to_dict(),
            "nodeStatuses": {k: str(v) for k, v in self.get_all_statuses().items()},
            "retryCounts": self.get_retry_counts(),
            "metrics": self.get_metrics(),
            "slowNodes": self.slow_nodes(),
            "globalVariables": self.get_all_globals(),
            "failures": [f.to_dict() for f in self.get_failures()],
        }
