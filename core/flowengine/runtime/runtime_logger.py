"""RuntimeLogger: a run-log sink that persists to a RuntimeLogStore.

Each ``append()`` writes immediately to disk (JSONL append), so the log
trail survives a crashed process. Only the summary is written at
``finish_run()`` since it aggregates the attempts.

Usage::

    store = RuntimeLogStore(Path(log_dir))
    executor = FlowExecutor(registry, log_sink=RuntimeLogger(store))
    # After execution, store.load_details(run_id) returns every attempt

Safety: both methods catch all exceptions internally and log them via the
Python logger. Logging failure must never kill a successful run.
"""

import json
import logging
import threading
import uuid
from typing import Any

from flowengine.observability import get_trace_context
from flowengine.runtime.run_log import RunLogSink
from flowengine.runtime.runtime_log_schemas import NodeAttemptLog, RunSummaryLog
from flowengine.runtime.runtime_log_store import RuntimeLogStore

logger = logging.getLogger(__name__)

EXCESSIVE_RETRIES = 3


class RuntimeLogger(RunLogSink):
    """Writes run logs to disk.

    Thread-safe: uses a lock around file appends for parallel node safety.
    """

    def __init__(self, store: RuntimeLogStore) -> None:
        self._store = store
        self._known_runs: set[str] = set()
        self._lock = threading.Lock()

    @property
    def store(self) -> RuntimeLogStore:
        return self._store

    def append(
        self,
        run_id: str,
        node_key: str,
        input_json: str,
        output_json: str,
        timestamp: float,
    ) -> None:
        try:
            ctx = get_trace_context()
            attempt = NodeAttemptLog(
                run_id=run_id,
                node_key=node_key,
                input_json=input_json,
                output_json=output_json,
                timestamp=timestamp,
                failed=_is_error_payload(output_json),
                trace_id=ctx.get("trace_id", ""),
                snapshot_id=ctx.get("snapshot_id", ""),
                span_id=uuid.uuid4().hex[:16],
            )
            with self._lock:
                if run_id not in self._known_runs:
                    self._store.ensure_run_dir(run_id)
                    self._known_runs.add(run_id)
                self._store.append_attempt(run_id, attempt)
        except Exception:
            logger.exception(
                "Failed to append run log for run_id=%s node=%s (non-fatal)", run_id, node_key
            )

    async def finish_run(self, run_id: str, summary: dict[str, Any]) -> None:
        """Read the attempts back from disk, aggregate, write summary.json."""
        try:
            attempts = self._store.read_attempts_sync(run_id)

            attention_reasons: list[str] = []
            for failure in summary.get("failures", []):
                attention_reasons.append(
                    f"Node {failure.get('node_key')} failed: {failure.get('message')}"
                )
            for node_key, count in (summary.get("retryDetails") or {}).items():
                if count > EXCESSIVE_RETRIES:
                    attention_reasons.append(f"Excessive retries on {node_key}: {count}")
            for node_key in summary.get("slowNodes", []):
                attention_reasons.append(f"Slow node: {node_key}")

            ctx = get_trace_context()
            record = RunSummaryLog(
                run_id=run_id,
                snapshot_id=summary.get("snapshotId") or "",
                status=summary.get("status", ""),
                error=summary.get("error"),
                execution_quality=summary.get("executionQuality", ""),
                partial_failure=summary.get("partialFailure", False),
                node_path=summary.get("path", []),
                total_nodes=summary.get("totalNodes", 0),
                completed=summary.get("completed", 0),
                failed=summary.get("failed", 0),
                skipped=summary.get("skipped", 0),
                total_retries=summary.get("totalRetries", 0),
                total_attempts=len(attempts),
                failures=summary.get("failures", []),
                slow_nodes=summary.get("slowNodes", []),
                needs_attention=bool(attention_reasons),
                attention_reasons=attention_reasons,
                started_at=summary.get("startedAt", ""),
                duration_ms=summary.get("durationMs", 0),
                trace_id=ctx.get("trace_id", ""),
            )

            await self._store.save_summary(run_id, record)
            logger.info(
                "Run logs saved: run_id=%s status=%s attempts=%d",
                run_id,
                record.status,
                len(attempts),
            )
        except Exception:
            logger.exception("Failed to save run logs for run_id=%s (non-fatal)", run_id)
        finally:
            with self._lock:
                self._known_runs.discard(run_id)


def _is_error_payload(output_json: str) -> bool:
    try:
        payload = json.loads(output_json)
    except (TypeError, ValueError):
        return False
    return isinstance(payload, dict) and "errorType" in payload and "error" in payload
