from .groups import GroupCatalog, GroupVisibilityMap, GroupVisibilityService
from .snapshots import SettingsSnapshot, SettingsSnapshotStore, reset_snapshot_cache

__all__ = [
    "GroupCatalog",
    "GroupVisibilityMap",
    "GroupVisibilityService",
    "SettingsSnapshot",
    "SettingsSnapshotStore",
    "reset_snapshot_cache",
]
