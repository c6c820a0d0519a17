"""
Snapshot stores - where runs load their snapshots from.

A store only ever adds snapshots. ``delete`` writes a tombstoned copy
(``deleted_at`` set) instead of removing anything, and loading a tombstoned
snapshot fails the same way as loading an unknown id.

File layout::

    {base_path}/
      snapshots/
        {snapshot_id}.json
"""

import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from flowengine.errors import NotFoundError
from flowengine.graph.snapshot import FlowSnapshot

logger = logging.getLogger(__name__)


@runtime_checkable
class SnapshotLoader(Protocol):
    """Anything that can load a snapshot by id."""

    def load(self, snapshot_id: str) -> FlowSnapshot: ...


def _check_available(snapshot: FlowSnapshot, snapshot_id: str) -> FlowSnapshot:
    if not snapshot.is_available:
        raise NotFoundError(f"Snapshot '{snapshot_id}' has been deleted", snapshot_id=snapshot_id)
    return snapshot


class InMemorySnapshotStore:
    """Dict-backed snapshot store."""

    def __init__(self, snapshots: list[FlowSnapshot] | None = None):
        self._snapshots: dict[str, FlowSnapshot] = {}
        self._lock = threading.Lock()
        for snapshot in snapshots or []:
            self.save(snapshot)

    def save(self, snapshot: FlowSnapshot) -> None:
        with self._lock:
            self._snapshots[snapshot.id] = snapshot

    def load(self, snapshot_id: str) -> FlowSnapshot:
        """
        Load a snapshot.

        Raises:
            NotFoundError: Unknown or deleted snapshot
        """
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise NotFoundError(f"Snapshot '{snapshot_id}' not found", snapshot_id=snapshot_id)
        return _check_available(snapshot, snapshot_id)

    def exists(self, snapshot_id: str) -> bool:
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
        return snapshot is not None and snapshot.is_available

    def list_versions(self, definition_id: str, include_deleted: bool = False) -> list[FlowSnapshot]:
        """All snapshots of a flow definition, newest version first."""
        with self._lock:
            snapshots = [s for s in self._snapshots.values() if s.definition_id == definition_id]
        if not include_deleted:
            snapshots = [s for s in snapshots if s.is_available]
        return sorted(snapshots, key=lambda s: s.version, reverse=True)

    def latest(self, definition_id: str) -> FlowSnapshot:
        versions = self.list_versions(definition_id)
        if not versions:
            raise NotFoundError(
                f"No snapshot for definition '{definition_id}'", definition_id=definition_id
            )
        return versions[0]

    def delete(self, snapshot_id: str) -> bool:
        """Tombstone a snapshot. Returns False if it was unknown or already deleted."""
        with self._lock:
            snapshot = self._snapshots.get(snapshot_id)
            if snapshot is None or not snapshot.is_available:
                return False
            self._snapshots[snapshot_id] = snapshot.mark_deleted()
        logger.info(f"Deleted snapshot {snapshot_id}")
        return True


class FileSnapshotStore:
    """
    One JSON file per snapshot.

    Example:
        store = FileSnapshotStore("~/.flowengine")
        store.save(snapshot)
        store.load(snapshot.id)
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path).expanduser()
        self._dir = self.base_path / "snapshots"
        self._lock = threading.Lock()

    def _validate_key(self, key: str) -> None:
        """
        Validate a snapshot id before using it as a file name.

        Raises:
            ValueError: If the key contains path traversal or dangerous patterns
        """
        if not key or key.strip() == "":
            raise ValueError("Key cannot be empty")

        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid key format: path separators not allowed in '{key}'")

        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid key format: path traversal detected in '{key}'")

        if len(key) > 1 and key[1] == ":":
            raise ValueError(f"Invalid key format: absolute paths not allowed in '{key}'")

        if "\x00" in key:
            raise ValueError("Invalid key format: null bytes not allowed")

        dangerous_chars = {"<", ">", "|", "&", "$", "`", "'", '"'}
        if any(char in key for char in dangerous_chars):
            raise ValueError(f"Invalid key format: contains dangerous characters in '{key}'")

    def _path(self, snapshot_id: str) -> Path:
        self._validate_key(snapshot_id)
        return self._dir / f"{snapshot_id}.json"

    def save(self, snapshot: FlowSnapshot) -> Path:
        """Write a snapshot atomically: write to .tmp then rename."""
        path = self._path(snapshot.id)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(snapshot.to_json(), encoding="utf-8")
            tmp.replace(path)
        return path

    def load(self, snapshot_id: str) -> FlowSnapshot:
        """
        Load a snapshot.

        Raises:
            NotFoundError: Unknown, deleted, empty or unparsable snapshot
        """
        try:
            path = self._path(snapshot_id)
        except ValueError as e:
            raise NotFoundError(str(e), snapshot_id=snapshot_id) from e
        if not path.exists():
            raise NotFoundError(f"Snapshot '{snapshot_id}' not found", snapshot_id=snapshot_id)
        payload = path.read_text(encoding="utf-8")
        return _check_available(FlowSnapshot.from_json(payload, snapshot_id), snapshot_id)

    def exists(self, snapshot_id: str) -> bool:
        try:
            self.load(snapshot_id)
        except NotFoundError:
            return False
        return True

    def list_ids(self) -> list[str]:
        if not self._dir.exists():
            return []
        return sorted(p.stem for p in self._dir.glob("*.json"))

    def list_versions(self, definition_id: str, include_deleted: bool = False) -> list[FlowSnapshot]:
        """All snapshots of a flow definition, newest version first. Corrupt files are skipped."""
        snapshots = []
        for snapshot_id in self.list_ids():
            path = self._dir / f"{snapshot_id}.json"
            try:
                snapshot = FlowSnapshot.from_json(path.read_text(encoding="utf-8"), snapshot_id)
            except NotFoundError as e:
                logger.warning(f"Skipping unreadable snapshot file {path}: {e.message}")
                continue
            if snapshot.definition_id != definition_id:
                continue
            if snapshot.is_available or include_deleted:
                snapshots.append(snapshot)
        return sorted(snapshots, key=lambda s: s.version, reverse=True)

    def delete(self, snapshot_id: str) -> bool:
        """Tombstone a snapshot. Returns False if it was unknown or already deleted."""
        try:
            snapshot = self.load(snapshot_id)
        except NotFoundError:
            return False
        self.save(snapshot.mark_deleted())
        logger.info(f"Deleted snapshot {snapshot_id}")
        return True
