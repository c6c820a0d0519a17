"""
Run Schema - one execution of a snapshot against an input payload.

FlowRun records are frozen; the ``mark_*`` methods return updated copies.
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class RunStatus(StrEnum):
    """Status of a run."""

    CREATED = "CREATED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED)


class RunFailure(BaseModel):
    """A node that failed terminally during the run."""

    node_key: str
    node_type: str
    error_type: str
    message: str
    retry_count: int = 0

    model_config = {"frozen": True}


class FlowRun(BaseModel):
    """
    A single run of a snapshot.

    Example:
        run = FlowRun(snapshot_id=snapshot.id, input_data={"x": 5})
        run = run.mark_running()
        run = run.mark_succeeded({"answer": 42})
        run.duration_ms
    """

    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    snapshot_id: str
    status: RunStatus = RunStatus.CREATED
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    failures: tuple[RunFailure, ...] = ()
    partial_failure: bool = False

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"frozen": True}

    @computed_field
    @property
    def duration_ms(self) -> int:
        """Duration of the run in milliseconds. 0 until the run has finished."""
        if self.started_at is None or self.completed_at is None:
            return 0
        delta = self.completed_at - self.started_at
        return int(delta.total_seconds() * 1000)

    def mark_running(self) -> "FlowRun":
        return self.model_copy(
            update={"status": RunStatus.RUNNING, "started_at": datetime.now(UTC)}
        )

    def mark_succeeded(
        self,
        output_data: dict[str, Any],
        failures: list[RunFailure] | None = None,
    ) -> "FlowRun":
        """Finish the run successfully. Any recorded failures make it a partial failure."""
        failures = failures or []
        return self._finish(
            status=RunStatus.SUCCEEDED,
            output_data=output_data,
            failures=tuple(failures),
            partial_failure=bool(failures),
        )

    def mark_failed(
        self,
        error: str,
        failures: list[RunFailure] | None = None,
        output_data: dict[str, Any] | None = None,
    ) -> "FlowRun":
        return self._finish(
            status=RunStatus.FAILED,
            error=error,
            failures=tuple(failures or []),
            output_data=output_data or {},
        )

    def _finish(self, **update: Any) -> "FlowRun":
        now = datetime.now(UTC)
        update["completed_at"] = now
        if self.started_at is None:
            update["started_at"] = now
        return self.model_copy(update=update)
