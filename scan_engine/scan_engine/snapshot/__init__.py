"""Repository snapshot construction."""

from scan_engine.snapshot.builder import (
    RepositorySnapshot,
    SnapshotFile,
    build_snapshot,
    is_ignored,
)

__all__ = ["RepositorySnapshot", "SnapshotFile", "build_snapshot", "is_ignored"]
