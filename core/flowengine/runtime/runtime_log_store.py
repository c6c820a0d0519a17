"""File-based storage for run logs.

Each run gets its own directory under ``runs/``. No shared mutable index:
``list_runs()`` scans the directory and loads summary.json from each run.

Attempts use JSONL (one JSON object per line) for incremental
append-on-write, so the log trail is on disk as soon as each attempt
finishes, not only when the run does. The summary is written once at the
end as a regular JSON file since it aggregates the attempts.

Storage layout::

    {base_path}/
      runs/
        {run_id}/
          summary.json     # Level 1 - written once at end
          details.jsonl    # Level 2 - appended per node attempt
"""

import asyncio
import json
import logging
from pathlib import Path

from pydantic import BaseModel, ValidationError

from flowengine.runtime.runtime_log_schemas import (
    NodeAttemptLog,
    RunDetailsLog,
    RunSummaryLog,
)

logger = logging.getLogger(__name__)


class RuntimeLogStore:
    """Persists run logs. Thread-safe via per-run directories."""

    def __init__(self, base_path: str | Path) -> None:
        self._base_path = Path(base_path).expanduser()

    @property
    def base_path(self) -> Path:
        return self._base_path

    def _get_run_dir(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id.startswith(".") or "\x00" in run_id:
            raise ValueError(f"Invalid run id '{run_id}'")
        return self._base_path / "runs" / run_id

    # -------------------------------------------------------------------
    # Incremental write (sync, called from locked sections)
    # -------------------------------------------------------------------

    def ensure_run_dir(self, run_id: str) -> None:
        self._get_run_dir(run_id).mkdir(parents=True, exist_ok=True)

    def append_attempt(self, run_id: str, attempt: NodeAttemptLog) -> None:
        """Append one JSONL line to details.jsonl. Sync."""
        path = self._get_run_dir(run_id) / "details.jsonl"
        line = json.dumps(attempt.model_dump(), ensure_ascii=False) + "\n"
        with open(path, "a", encoding="utf-8") as f:
            f.write(line)

    def read_attempts_sync(self, run_id: str) -> list[NodeAttemptLog]:
        """Read details.jsonl back. Skips corrupt lines."""
        path = self._get_run_dir(run_id) / "details.jsonl"
        return _read_jsonl_as_models(path, NodeAttemptLog)

    # -------------------------------------------------------------------
    # Summary write (async, called from finish_run)
    # -------------------------------------------------------------------

    async def save_summary(self, run_id: str, summary: RunSummaryLog) -> None:
        """Write summary.json atomically. Called once per run."""
        run_dir = self._get_run_dir(run_id)
        await asyncio.to_thread(run_dir.mkdir, parents=True, exist_ok=True)
        await self._write_json(run_dir / "summary.json", summary.model_dump())

    # -------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------

    async def load_summary(self, run_id: str) -> RunSummaryLog | None:
        data = await self._read_json(self._get_run_dir(run_id) / "summary.json")
        return RunSummaryLog(**data) if data is not None else None

    async def load_details(self, run_id: str) -> RunDetailsLog | None:
        path = self._get_run_dir(run_id) / "details.jsonl"

        def _read() -> RunDetailsLog | None:
            if not path.exists():
                return None
            return RunDetailsLog(run_id=run_id, attempts=_read_jsonl_as_models(path, NodeAttemptLog))

        return await asyncio.to_thread(_read)

    async def list_runs(
        self,
        status: str = "",
        needs_attention: bool | None = None,
        limit: int = 20,
    ) -> list[RunSummaryLog]:
        """Load summaries, filter, and sort newest first.

        Directories without summary.json are in-progress runs and get a
        synthetic summary with status="in_progress".
        """
        run_ids = await asyncio.to_thread(self._scan_run_dirs)
        summaries: list[RunSummaryLog] = []

        for run_id in run_ids:
            summary = await self.load_summary(run_id)
            if summary is None:
                summary = RunSummaryLog(run_id=run_id, status="in_progress")
            if status and summary.status != status:
                continue
            if needs_attention is not None and summary.needs_attention != needs_attention:
                continue
            summaries.append(summary)

        summaries.sort(key=lambda s: s.started_at, reverse=True)
        return summaries[:limit]

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _scan_run_dirs(self) -> list[str]:
        runs_dir = self._base_path / "runs"
        if not runs_dir.exists():
            return []
        return [d.name for d in runs_dir.iterdir() if d.is_dir()]

    @staticmethod
    async def _write_json(path: Path, data: dict) -> None:
        """Write JSON atomically: write to .tmp then rename."""
        tmp = path.with_suffix(".tmp")
        content = json.dumps(data, indent=2, ensure_ascii=False, default=str)

        def _write() -> None:
            tmp.write_text(content, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    @staticmethod
    async def _read_json(path: Path) -> dict | None:
        """Read and parse a JSON file. Returns None if missing or corrupt."""

        def _read() -> dict | None:
            if not path.exists():
                return None
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Failed to read %s: %s", path, e)
                return None

        return await asyncio.to_thread(_read)


def _read_jsonl_as_models(path: Path, model_cls: type[BaseModel]) -> list:
    """Parse a JSONL file into model instances.

    Skips blank lines and corrupt lines (partial writes from crashes).
    """
    results: list = []
    if not path.exists():
        return results
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(model_cls(**json.loads(line)))
                except (json.JSONDecodeError, ValidationError, TypeError) as e:
                    logger.warning("Skipping corrupt JSONL line in %s: %s", path, e)
    except OSError as e:
        logger.warning("Failed to read %s: %s", path, e)
    return results
