"""
Run-log sinks: append-only destinations for per-attempt node I/O.

The executor calls ``append`` once per node attempt (successful or not) and
``finish_run`` once when the run is finalized. Sinks are fire-and-forget;
the executor catches and logs anything a sink raises, so a broken sink can
never change a run's outcome.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class RunLogSink(ABC):
    """Destination for the per-node log trail of runs."""

    @abstractmethod
    def append(
        self,
        run_id: str,
        node_key: str,
        input_json: str,
        output_json: str,
        timestamp: float,
    ) -> None:
        """Record one node attempt. ``output_json`` holds the error for failed attempts."""

    async def finish_run(self, run_id: str, summary: dict[str, Any]) -> None:
        """Called once after the run is finalized."""
        return None


@dataclass(frozen=True)
class RunLogEntry:
    run_id: str
    node_key: str
    input_json: str
    output_json: str
    timestamp: float


class InMemoryRunLogSink(RunLogSink):
    """Keeps every entry in memory. Used by tests and the CLI."""

    def __init__(self) -> None:
        self._entries: list[RunLogEntry] = []
        self._summaries: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def append(
        self,
        run_id: str,
        node_key: str,
        input_json: str,
        output_json: str,
        timestamp: float,
    ) -> None:
        with self._lock:
            self._entries.append(RunLogEntry(run_id, node_key, input_json, output_json, timestamp))

    async def finish_run(self, run_id: str, summary: dict[str, Any]) -> None:
        with self._lock:
            self._summaries[run_id] = dict(summary)

    def entries(self, run_id: str | None = None, node_key: str | None = None) -> list[RunLogEntry]:
        with self._lock:
            return [
                entry
                for entry in self._entries
                if (run_id is None or entry.run_id == run_id)
                and (node_key is None or entry.node_key == node_key)
            ]

    def summary(self, run_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._summaries.get(run_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._summaries.clear()
