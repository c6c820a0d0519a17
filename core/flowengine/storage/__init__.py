"""Snapshot storage."""

from flowengine.storage.snapshot_store import (
    FileSnapshotStore,
    InMemorySnapshotStore,
    SnapshotLoader,
)

__all__ = ["FileSnapshotStore", "InMemorySnapshotStore", "SnapshotLoader"]
