"""
Flow Executor - runs a snapshot against an input payload.

The executor:
1. Validates the snapshot and checks every node type against the registry
2. Creates the run's ExecutionContext
3. Walks the graph, running every ready node as an asyncio task
4. Applies each node's retry policy
5. Finalizes the FlowRun and hands the summary to the run-log sink

Traversal is dead-path elimination over the DAG. Every edge ends up TAKEN
or DEAD. A node is ready once all its incoming edges are resolved; it runs
if at least one of them was taken and is SKIPPED otherwise, which kills its
own outgoing edges in turn. Joins therefore wait for every branch, and the
branches a CONDITION or SWITCH did not pick are skipped all the way down.
"""

import asyncio
import copy
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import (
    ExecutionFailure,
    FlowError,
    FlowTimeoutError,
    InvalidConfigError,
    NodeTimeoutError,
    NotFoundError,
)
from flowengine.graph.context import ExecutionContext, NodeFailure, NodeStatus
from flowengine.graph.expression import create_evaluator
from flowengine.graph.node import NodeExecutor
from flowengine.graph.registry import NodeExecutorRegistry, create_default_registry
from flowengine.graph.snapshot import (
    EdgeCondition,
    EdgeDescriptor,
    FlowSnapshot,
    NodeDescriptor,
    NodeType,
)
from flowengine.observability import set_trace_context
from flowengine.runtime.run_log import RunLogSink
from flowengine.schemas.run import FlowRun, RunFailure, RunStatus


class EdgeState(StrEnum):
    PENDING = "PENDING"
    TAKEN = "TAKEN"
    DEAD = "DEAD"


@dataclass
class NodeOutcome:
    """What a node task hands back to the traversal loop."""

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None


@dataclass
class ExecutionResult:
    """Result of executing a snapshot."""

    run: FlowRun
    output: dict[str, Any] = field(default_factory=dict)
    path: list[str] = field(default_factory=list)  # Node keys in completion order
    node_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    node_statuses: dict[str, str] = field(default_factory=dict)

    # Execution quality metrics
    retry_details: dict[str, int] = field(default_factory=dict)  # {node_key: retry_count}
    total_retries: int = 0
    failures: list[NodeFailure] = field(default_factory=list)
    execution_quality: str = "clean"  # "clean", "degraded", or "failed"
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def success(self) -> bool:
        return self.run.status == RunStatus.SUCCEEDED

    @property
    def error(self) -> str | None:
        return self.run.error

    @property
    def is_clean_success(self) -> bool:
        """True only if the run succeeded with no retries or failures."""
        return self.success and self.execution_quality == "clean"

    @property
    def is_degraded_success(self) -> bool:
        """True if the run succeeded but had retries or failed nodes."""
        return self.success and self.execution_quality == "degraded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run": self.run.model_dump(mode="json"),
            "output": self.output,
            "path": self.path,
            "nodeStatuses": self.node_statuses,
            "retryDetails": self.retry_details,
            "totalRetries": self.total_retries,
            "failures": [f.to_dict() for f in self.failures],
            "executionQuality": self.execution_quality,
            "summary": self.summary,
        }


class FlowExecutor:
    """
    Executes flow snapshots.

    Example:
        executor = FlowExecutor(
            registry=create_default_registry(),
            config=EngineConfig.load(),
            log_sink=InMemoryRunLogSink(),
        )

        result = await executor.execute(snapshot, input_data={"x": 5})
        result.success, result.output
    """

    def __init__(
        self,
        registry: NodeExecutorRegistry | None = None,
        config: EngineConfig | None = None,
        log_sink: RunLogSink | None = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry or create_default_registry(
            evaluator=create_evaluator(self.config.expression_evaluator),
            http_timeout_seconds=self.config.http_timeout_seconds,
        )
        self.log_sink = log_sink
        self.logger = logging.getLogger(__name__)

    def validate(self, snapshot: FlowSnapshot) -> None:
        """
        Check a snapshot before anything runs.

        Raises:
            NotFoundError: An edge references a missing node key
            InvalidConfigError: Any other structural problem
            UnsupportedNodeTypeError: A node type has no registered executor
        """
        missing = snapshot.missing_references()
        if missing:
            raise NotFoundError(
                f"Snapshot '{snapshot.id}' references missing nodes: {'; '.join(missing)}",
                snapshot_id=snapshot.id,
                problems=missing,
            )

        problems = snapshot.validate_structure(require_outgoing=False)
        if problems:
            raise InvalidConfigError(
                f"Snapshot '{snapshot.id}' is invalid: {'; '.join(problems)}",
                snapshot_id=snapshot.id,
                problems=problems,
            )

        for key in snapshot.dangling_nodes():
            self.logger.warning(f"Node '{key}' has no outgoing edge; its branch ends there")

        self.registry.validate_snapshot(snapshot)

    async def execute(
        self,
        snapshot: FlowSnapshot,
        input_data: dict[str, Any] | None = None,
        run_id: str | None = None,
        timeout_minutes: float | None = None,
    ) -> ExecutionResult:
        """
        Execute a snapshot.

        Node failures never raise: they end up in the result's failure chain.
        Only validation errors (see ``validate``) reach the caller.

        Args:
            snapshot: The snapshot to run
            input_data: Initial payload handed to the start node(s)
            run_id: Id for the run (generated when omitted)
            timeout_minutes: Overall run timeout, clamped by configuration

        Returns:
            ExecutionResult with the finalized FlowRun
        """
        self.validate(snapshot)

        run = FlowRun(snapshot_id=snapshot.id, input_data=copy.deepcopy(input_data or {}))
        if run_id:
            run = run.model_copy(update={"id": run_id})

        set_trace_context(trace_id=uuid.uuid4().hex, run_id=run.id, snapshot_id=snapshot.id)
        context = ExecutionContext(
            run_id=run.id,
            snapshot=snapshot,
            slow_execution_ms=self.config.slow_node_ms,
        )
        timeout_seconds = self.config.run_timeout_seconds(timeout_minutes)

        run = run.mark_running()
        self.logger.info(
            f"🚀 Starting run {run.id}: snapshot {snapshot.name or snapshot.id} "
            f"v{snapshot.version} ({snapshot.node_count()} nodes)"
        )

        path: list[str] = []
        interruption: str | None = None
        try:
            async with asyncio.timeout(timeout_seconds):
                await self._traverse(snapshot, context, run.input_data, path)
        except TimeoutError:
            interruption = FlowTimeoutError(
                f"Run {run.id} exceeded its timeout of {timeout_seconds / 60:g} minutes",
                run_id=run.id,
            ).message
            self.logger.error(f"⏱ {interruption}")
        except asyncio.CancelledError:
            interruption = f"Run {run.id} was cancelled"
            self.logger.info(f"⏸ {interruption}")

        for key, status in context.get_all_statuses().items():
            if status in (NodeStatus.PENDING, NodeStatus.RUNNING, NodeStatus.RETRYING):
                context.set_status(key, NodeStatus.SKIPPED)

        return await self._finalize(snapshot, context, run, path, interruption)

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    async def _traverse(
        self,
        snapshot: FlowSnapshot,
        context: ExecutionContext,
        initial_input: dict[str, Any],
        path: list[str],
    ) -> None:
        edges = list(snapshot.edges)
        index_of = {id(edge): i for i, edge in enumerate(edges)}
        incoming = {
            key: [index_of[id(e)] for e in snapshot.incoming_edges(key)] for key in snapshot.node_keys()
        }
        outgoing = {
            key: [index_of[id(e)] for e in snapshot.outgoing_edges(key)] for key in snapshot.node_keys()
        }
        edge_states = [EdgeState.PENDING] * len(edges)
        edge_payloads: dict[int, dict[str, Any]] = {}

        pending = list(snapshot.node_keys())
        running: dict[asyncio.Task, NodeDescriptor] = {}
        semaphore = asyncio.Semaphore(max(1, self.config.max_parallel_nodes))

        def is_ready(key: str) -> bool:
            return all(edge_states[i] != EdgeState.PENDING for i in incoming[key])

        try:
            while True:
                progressed = True
                while progressed:
                    progressed = False
                    for key in list(pending):
                        if not is_ready(key):
                            continue
                        pending.remove(key)
                        progressed = True
                        node = snapshot.get_node(key)
                        taken = [i for i in incoming[key] if edge_states[i] == EdgeState.TAKEN]

                        if incoming[key] and not taken:
                            self.logger.debug(f"⊘ Skipping {key}: no incoming edge was taken")
                            context.set_status(key, NodeStatus.SKIPPED)
                            for i in outgoing[key]:
                                edge_states[i] = EdgeState.DEAD
                            continue

                        node_input = copy.deepcopy(initial_input)
                        for i in taken:
                            node_input.update(edge_payloads[i])
                        task = asyncio.create_task(
                            self._run_node(node, node_input, context, semaphore),
                            name=f"node:{key}",
                        )
                        running[task] = node

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node = running.pop(task)
                    outcome = task.result()
                    if outcome.success:
                        path.append(node.key)

                    taken_targets = []
                    for i in outgoing[node.key]:
                        edge = edges[i]
                        if self._should_take(node, edge, outcome):
                            edge_states[i] = EdgeState.TAKEN
                            edge_payloads[i] = edge.map_inputs(outcome.output)
                            taken_targets.append(edge.target)
                        else:
                            edge_states[i] = EdgeState.DEAD

                    if len(taken_targets) > 1:
                        self.logger.info(f"⑂ Fan-out at {node.key}: {', '.join(taken_targets)}")
                    elif taken_targets:
                        self.logger.debug(f"→ {node.key} -> {taken_targets[0]}")
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    def _should_take(self, node: NodeDescriptor, edge: EdgeDescriptor, outcome: NodeOutcome) -> bool:
        condition = edge.condition
        if not outcome.success:
            return condition in (EdgeCondition.ON_FAILURE, EdgeCondition.ALWAYS)
        if condition == EdgeCondition.ON_FAILURE:
            return False

        branch = edge.branch
        if branch is None:
            return True
        if node.type == NodeType.CONDITION:
            return branch == ("true" if outcome.output.get("_condition_result") else "false")
        if node.type == NodeType.SWITCH:
            return branch == str(outcome.output.get("_selected_branch"))
        return True

    # ------------------------------------------------------------------
    # Node attempts
    # ------------------------------------------------------------------

    async def _run_node(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
        semaphore: asyncio.Semaphore,
    ) -> NodeOutcome:
        set_trace_context(node_key=node.key)
        policy = node.parsed_retry_policy()
        executor = self.registry.resolve(node.type)

        while True:
            attempt = context.get_retry_count(node.key) + 1
            context.set_status(node.key, NodeStatus.RUNNING)
            self.logger.info(
                f"▶ {node.display_name} ({node.type}) attempt {attempt}/{policy.max_attempts}",
                extra={"event": "node_start", "node_type": node.type, "attempt": attempt},
            )

            started = time.perf_counter()
            try:
                async with semaphore:
                    output = await self._invoke(executor, node, input_data, context, policy.timeout_seconds)
                context.record_result(node.key, output)
            except Exception as e:
                error = e if isinstance(e, FlowError) else ExecutionFailure(
                    f"{type(e).__name__}: {e}", node_key=node.key
                )
                duration_ms = (time.perf_counter() - started) * 1000
                context.record_metric(node.key, duration_ms)
                failed_output = {
                    "error": error.message,
                    "errorType": type(error).__name__,
                    "attempt": attempt,
                }
                self._append_log(context.run_id, node.key, input_data, failed_output)
                self.logger.error(f"✗ {node.key} failed: {error.message}")
                context.set_status(node.key, NodeStatus.FAILED)

                if not error.retryable:
                    return self._fail(node, input_data, context, error)

                count = context.increment_retry(node.key)
                if count >= policy.max_attempts:
                    self.logger.error(
                        f"✗ Max attempts ({policy.max_attempts}) exhausted for node {node.key}"
                    )
                    context.set_status(node.key, NodeStatus.FAILED)
                    return self._fail(node, input_data, context, error)

                delay = policy.backoff_seconds(
                    count, self.config.retry_delay_ms, self.config.max_backoff_ms
                )
                self.logger.info(
                    f"↻ Retrying {node.key} ({count + 1}/{policy.max_attempts}) in {delay:g}s"
                )
                await asyncio.sleep(delay)
                continue

            duration_ms = (time.perf_counter() - started) * 1000
            context.record_metric(node.key, duration_ms)
            self._append_log(context.run_id, node.key, input_data, output)
            self.logger.info(
                f"✓ {node.key} completed in {duration_ms:.0f}ms",
                extra={"event": "node_complete", "latency_ms": round(duration_ms)},
            )
            return NodeOutcome(success=True, output=output)

    async def _invoke(
        self,
        executor: NodeExecutor,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
        timeout_seconds: float | None,
    ) -> dict[str, Any]:
        call = executor.execute(node, copy.deepcopy(input_data), context)
        if timeout_seconds is None:
            result = await call
        else:
            try:
                result = await asyncio.wait_for(call, timeout_seconds)
            except TimeoutError as e:
                raise NodeTimeoutError(
                    f"Node '{node.key}' timed out after {timeout_seconds:g}s", node_key=node.key
                ) from e

        if not isinstance(result, dict):
            raise ExecutionFailure(
                f"{executor.name} returned {type(result).__name__} for node '{node.key}', expected dict",
                node_key=node.key,
            )
        return result

    def _fail(
        self,
        node: NodeDescriptor,
        input_data: dict[str, Any],
        context: ExecutionContext,
        error: FlowError,
    ) -> NodeOutcome:
        context.record_failure(node.key, node.type, error)
        output = dict(input_data)
        output["_error"] = error.message
        output["_failed_node"] = node.key
        return NodeOutcome(success=False, output=output, error=error)

    def _append_log(
        self,
        run_id: str,
        node_key: str,
        input_data: dict[str, Any],
        output_data: dict[str, Any],
    ) -> None:
        if self.log_sink is None:
            return
        try:
            self.log_sink.append(
                run_id,
                node_key,
                json.dumps(input_data, default=str),
                json.dumps(output_data, default=str),
                time.time(),
            )
        except Exception:
            self.logger.exception(f"Run-log sink failed for node {node_key} (non-fatal)")

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        snapshot: FlowSnapshot,
        context: ExecutionContext,
        run: FlowRun,
        path: list[str],
        interruption: str | None,
    ) -> ExecutionResult:
        failures = context.get_failures()
        run_failures = [
            RunFailure(
                node_key=f.node_key,
                node_type=f.node_type,
                error_type=f.error_type,
                message=f.message,
                retry_count=f.retry_count,
            )
            for f in failures
        ]
        statuses = context.get_all_statuses()
        results = context.get_all_results()

        end_keys = [node.key for node in snapshot.end_nodes()]
        if end_keys:
            output_keys = [key for key in path if key in end_keys]
        else:
            output_keys = [key for key in path if not snapshot.outgoing_edges(key)]
        output: dict[str, Any] = {}
        for key in output_keys:
            output.update(results.get(key, {}))

        if interruption is not None:
            success, error = False, interruption
        elif end_keys:
            success = any(statuses.get(key) == NodeStatus.COMPLETED for key in end_keys)
            error = None if success else self._failure_message(failures, "No END node was reached")
        else:
            success = not failures
            error = None if success else self._failure_message(failures, "")

        if success:
            run = run.mark_succeeded(output, run_failures)
        else:
            run = run.mark_failed(error or "Run failed", run_failures, output)

        total_retries = context.total_retries()
        if not success:
            quality = "failed"
        elif failures or total_retries > 0:
            quality = "degraded"
        else:
            quality = "clean"

        report = context.detailed_report()
        result = ExecutionResult(
            run=run,
            output=output,
            path=path,
            node_results=results,
            node_statuses={key: str(status) for key, status in statuses.items()},
            retry_details={k: v for k, v in context.get_retry_counts().items() if v > 0},
            total_retries=total_retries,
            failures=failures,
            execution_quality=quality,
            summary=report["summary"],
        )

        if success:
            self.logger.info(f"✓ Run {run.id} succeeded ({quality})")
            self.logger.info(f"   Path: {' → '.join(path)}")
        else:
            self.logger.error(f"✗ Run {run.id} failed: {run.error}")
        self.logger.info(f"   Duration: {run.duration_ms}ms, retries: {total_retries}")

        await self._finish_log(run, result, report)
        return result

    @staticmethod
    def _failure_message(failures: list[NodeFailure], default: str) -> str:
        if not failures:
            return default or "Run failed"
        last = failures[-1]
        return f"Node '{last.node_key}' failed after {last.retry_count} retries: {last.message}"

    async def _finish_log(self, run: FlowRun, result: ExecutionResult, report: dict[str, Any]) -> None:
        if self.log_sink is None:
            return
        summary = {
            "runId": run.id,
            "snapshotId": run.snapshot_id,
            "status": str(run.status),
            "error": run.error,
            "executionQuality": result.execution_quality,
            "partialFailure": run.partial_failure,
            "path": list(result.path),
            "startedAt": run.started_at.isoformat() if run.started_at else "",
            "durationMs": run.duration_ms,
            "retryDetails": result.retry_details,
            "failures": report["failures"],
            "slowNodes": report["slowNodes"],
            "nodeStatuses": report["nodeStatuses"],
            **report["summary"],
        }
        try:
            await self.log_sink.finish_run(run.id, summary)
        except Exception:
            self.logger.exception(f"Run-log sink failed to finish run {run.id} (non-fatal)")
