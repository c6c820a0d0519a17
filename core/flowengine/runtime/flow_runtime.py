"""
Flow Runtime - the run service in front of the executor.

Loads snapshots by id, runs them in the foreground or as background tasks,
keeps track of in-flight runs and lets callers stop them.

Example:
    runtime = FlowRuntime(loader=FileSnapshotStore("~/.flowengine"))

    result = await runtime.execute_snapshot(snapshot_id, {"x": 5})

    run_id = await runtime.start_snapshot(snapshot_id, {"x": 5})
    await runtime.stop(run_id)
    result = await runtime.wait_for_completion(run_id)
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from typing import Any

from flowengine.config import EngineConfig
from flowengine.graph.executor import ExecutionResult, FlowExecutor
from flowengine.graph.registry import NodeExecutorRegistry
from flowengine.graph.snapshot import FlowSnapshot
from flowengine.runtime.run_log import RunLogSink
from flowengine.storage.snapshot_store import SnapshotLoader

logger = logging.getLogger(__name__)


class FlowRuntime:
    """
    Runs snapshots loaded from a SnapshotLoader.

    Args:
        loader: Where snapshots come from
        registry: Executor registry (the built-in executors when omitted)
        config: Engine configuration
        log_sink: Run-log sink handed to the executor
        result_retention_max: How many finished results to keep for lookup
    """

    def __init__(
        self,
        loader: SnapshotLoader,
        registry: NodeExecutorRegistry | None = None,
        config: EngineConfig | None = None,
        log_sink: RunLogSink | None = None,
        result_retention_max: int = 1000,
    ):
        self.loader = loader
        self.config = config or EngineConfig()
        self.executor = FlowExecutor(registry=registry, config=self.config, log_sink=log_sink)
        self._result_retention_max = result_retention_max

        self._tasks: dict[str, asyncio.Task] = {}
        self._results: OrderedDict[str, ExecutionResult] = OrderedDict()
        self._completion_events: dict[str, asyncio.Event] = {}

    @property
    def registry(self) -> NodeExecutorRegistry:
        return self.executor.registry

    def load(self, snapshot_id: str) -> FlowSnapshot:
        """Load and validate a snapshot. Raises NotFoundError, InvalidConfigError, UnsupportedNodeTypeError."""
        snapshot = self.loader.load(snapshot_id)
        self.executor.validate(snapshot)
        return snapshot

    async def execute_snapshot(
        self,
        snapshot_id: str,
        input_data: dict[str, Any] | None = None,
        timeout_minutes: float | None = None,
    ) -> ExecutionResult:
        """Run a snapshot to completion. Run creation errors propagate."""
        snapshot = self.load(snapshot_id)
        result = await self.executor.execute(snapshot, input_data, timeout_minutes=timeout_minutes)
        self._record_result(result)
        return result

    async def start_snapshot(
        self,
        snapshot_id: str,
        input_data: dict[str, Any] | None = None,
        timeout_minutes: float | None = None,
    ) -> str:
        """
        Start a run in the background and return its id.

        The snapshot is loaded and validated before this returns, so run
        creation errors still reach the caller.
        """
        snapshot = self.load(snapshot_id)
        run_id = f"run_{uuid.uuid4().hex[:12]}"

        self._completion_events[run_id] = asyncio.Event()
        task = asyncio.create_task(
            self._run_in_background(run_id, snapshot, input_data, timeout_minutes),
            name=f"run:{run_id}",
        )
        self._tasks[run_id] = task
        logger.debug(f"Started run {run_id} for snapshot {snapshot_id}")
        return run_id

    async def _run_in_background(
        self,
        run_id: str,
        snapshot: FlowSnapshot,
        input_data: dict[str, Any] | None,
        timeout_minutes: float | None,
    ) -> None:
        try:
            result = await self.executor.execute(
                snapshot, input_data, run_id=run_id, timeout_minutes=timeout_minutes
            )
            self._record_result(result)
        except Exception:
            logger.exception(f"Run {run_id} crashed")
        finally:
            self._tasks.pop(run_id, None)
            event = self._completion_events.pop(run_id, None)
            if event is not None:
                event.set()

    async def stop(self, run_id: str) -> bool:
        """
        Cancel an in-flight run. The run is finalized as FAILED.

        Returns:
            True if the run was running, False if unknown or already finished
        """
        task = self._tasks.get(run_id)
        if task is None or task.done():
            return False
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            # Cancelled before its first step, so nothing was finalized
            self._tasks.pop(run_id, None)
            event = self._completion_events.pop(run_id, None)
            if event is not None:
                event.set()
        logger.info(f"Stopped run {run_id}")
        return True

    async def wait_for_completion(
        self, run_id: str, timeout: float | None = None
    ) -> ExecutionResult | None:
        """Wait for a background run. Returns None on timeout or for unknown ids."""
        event = self._completion_events.get(run_id)
        if event is None:
            return self._results.get(run_id)
        try:
            if timeout:
                await asyncio.wait_for(event.wait(), timeout=timeout)
            else:
                await event.wait()
        except TimeoutError:
            return None
        return self._results.get(run_id)

    def get_result(self, run_id: str) -> ExecutionResult | None:
        return self._results.get(run_id)

    def running_run_ids(self) -> list[str]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    def is_running(self, run_id: str) -> bool:
        task = self._tasks.get(run_id)
        return task is not None and not task.done()

    def health_status(self) -> dict[str, Any]:
        executors = self.registry.health_status()
        return {
            "healthy": all(info["healthy"] for info in executors.values()),
            "runningRuns": len(self.running_run_ids()),
            "retainedResults": len(self._results),
            "supportedTypes": self.registry.supported_types(),
            "executors": executors,
        }

    def _record_result(self, result: ExecutionResult) -> None:
        self._results[result.run_id] = result
        self._results.move_to_end(result.run_id)
        while len(self._results) > self._result_retention_max:
            self._results.popitem(last=False)
