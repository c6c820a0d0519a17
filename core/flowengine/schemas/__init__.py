"""Run records."""

from flowengine.schemas.run import FlowRun, RunFailure, RunStatus

__all__ = ["FlowRun", "RunFailure", "RunStatus"]
