"""
Snapshot cache

- SnapshotStore: `data/{YYYY-MM-DD}/{HH-MM}.json` archive keyed by civil time
- IntervalScheduler: next :00/:15/:30/:45-style boundary in the configured zone
- UpdateCoordinator: single-flight refresh (pipeline -> store)
"""
from .snapshot_store import SnapshotStore
from .scheduler import IntervalScheduler, next_boundary

__all__ = ["SnapshotStore", "IntervalScheduler", "next_boundary"]
