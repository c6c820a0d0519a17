"""Pydantic models for the on-disk run log.

Level 1 - SUMMARY:   Per run status, quality, path, failures and timing
Level 2 - ATTEMPTS:  One line per node attempt with its input and output
"""

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Level 2: Per-attempt node I/O
# ---------------------------------------------------------------------------


class NodeAttemptLog(BaseModel):
    """Input and output of one node attempt.

    ``output_json`` carries ``{"error": ..., "errorType": ...}`` for failed
    attempts. Trace fields come from the observability ContextVar.
    """

    run_id: str
    node_key: str
    input_json: str = "{}"
    output_json: str = "{}"
    timestamp: float = 0.0
    failed: bool = False
    # Trace context (empty if not set):
    trace_id: str = ""
    snapshot_id: str = ""
    span_id: str = ""


# ---------------------------------------------------------------------------
# Level 1: Run summary
# ---------------------------------------------------------------------------


class RunSummaryLog(BaseModel):
    """Run-level summary, written once when the run is finalized."""

    run_id: str
    snapshot_id: str = ""
    status: str = ""  # "SUCCEEDED"|"FAILED"|"in_progress"
    error: str | None = None
    execution_quality: str = ""  # "clean"|"degraded"|"failed"
    partial_failure: bool = False
    node_path: list[str] = Field(default_factory=list)
    total_nodes: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total_retries: int = 0
    total_attempts: int = 0
    failures: list[dict[str, Any]] = Field(default_factory=list)
    slow_nodes: list[str] = Field(default_factory=list)
    needs_attention: bool = False
    attention_reasons: list[str] = Field(default_factory=list)
    started_at: str = ""  # ISO timestamp
    duration_ms: int = 0
    trace_id: str = ""


# ---------------------------------------------------------------------------
# Container models
# ---------------------------------------------------------------------------


class RunDetailsLog(BaseModel):
    """Level 2 container: every attempt of a run, in append order."""

    run_id: str
    attempts: list[NodeAttemptLog] = Field(default_factory=list)

    def for_node(self, node_key: str) -> list[NodeAttemptLog]:
        return [a for a in self.attempts if a.node_key == node_key]
