"""Sync engine for pystudysync - version tracking, change queue, merging."""

from .engine import SyncAbandoned, SyncEngine
from .manager import DataSyncManager
from .queue import ChangeQueue
from .resolver import (
    LwwResult,
    deep_merge,
    has_data_changed,
    last_write_wins,
    merge_collection_set,
    merge_collections,
    merge_records,
    merge_settings,
    resolve_conflict,
    size_of,
)
from .timer import DebounceTimer
from .versions import ProtocolGuard, VersionStore

__all__ = [
    "SyncEngine",
    "SyncAbandoned",
    "DataSyncManager",
    "ChangeQueue",
    "DebounceTimer",
    "ProtocolGuard",
    "VersionStore",
    "LwwResult",
    "deep_merge",
    "has_data_changed",
    "last_write_wins",
    "merge_collection_set",
    "merge_collections",
    "merge_records",
    "merge_settings",
    "resolve_conflict",
    "size_of",
]
