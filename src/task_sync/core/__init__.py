"""Core sync engine components for Task Sync."""

from task_sync.core.manager import SyncManager
from task_sync.core.scheduler import BackgroundSyncer
from task_sync.core.state import PassStats, SyncPhase, SyncState, SyncStatus

__all__ = [
    "SyncManager",
    "BackgroundSyncer",
    "PassStats",
    "SyncPhase",
    "SyncState",
    "SyncStatus",
]
