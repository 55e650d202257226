"""
Sync state types.

Provides the value types shared by the manager, scheduler and store:
- SyncState: persisted cursor, last sync time and initial-sync flag
- SyncStatus: read-only status surface with a log-safe rendering
- PassStats: what a single sync pass did
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from task_sync.models import FULL_SYNC_CURSOR


TOKEN_DISPLAY_LENGTH = 8


class SyncPhase(str, Enum):
    """Where the manager is within a sync pass."""

    IDLE = "idle"
    FETCHING = "fetching"
    APPLYING = "applying"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncState:
    """Persisted sync metadata, owned by the sync manager."""

    cursor: str = FULL_SYNC_CURSOR
    last_sync_at: datetime | None = None
    initial_sync_done: bool = False

    def to_status(self) -> "SyncStatus":
        return SyncStatus(
            initial_sync_done=self.initial_sync_done,
            last_sync_time=self.last_sync_at,
            sync_token=self.cursor,
        )


def mask_token(token: str) -> str:
    """Shorten an opaque token so it is safe to print or log."""
    if not token:
        return "none"
    if len(token) > TOKEN_DISPLAY_LENGTH:
        return token[:TOKEN_DISPLAY_LENGTH] + "..."
    return token


@dataclass(frozen=True)
class SyncStatus:
    """Snapshot of the replica's sync status."""

    initial_sync_done: bool
    last_sync_time: datetime | None
    sync_token: str

    @property
    def state_label(self) -> str:
        if not self.initial_sync_done:
            return "Not initialized"
        if self.last_sync_time is None:
            return "Initialized (never synced)"
        return f"Last sync: {self.last_sync_time.strftime('%Y-%m-%d %H:%M:%S')}"

    @property
    def token_display(self) -> str:
        return mask_token(self.sync_token)

    def __str__(self) -> str:
        return f"Sync Status: {self.state_label} (token: {self.token_display})"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display or JSON output (token masked)."""
        return {
            "initial_sync_done": self.initial_sync_done,
            "last_sync_time": (
                self.last_sync_time.isoformat() if self.last_sync_time else None
            ),
            "sync_token": self.token_display,
        }


@dataclass
class PassStats:
    """Statistics for a single sync pass."""

    operation: str  # full or incremental
    cursor_before: str = FULL_SYNC_CURSOR
    cursor_after: str = ""
    projects_upserted: int = 0
    projects_deleted: int = 0
    sections_upserted: int = 0
    sections_deleted: int = 0
    tasks_upserted: int = 0
    tasks_deleted: int = 0
    start_time: float = 0.0
    end_time: float = 0.0
    # Server answered an incremental request with a full snapshot
    server_full_sync: bool = False

    @property
    def total_changes(self) -> int:
        return (
            self.projects_upserted + self.projects_deleted
            + self.sections_upserted + self.sections_deleted
            + self.tasks_upserted + self.tasks_deleted
        )

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    def record(self, kind: str, deleted: bool) -> None:
        """Count one applied entity of ``kind`` (project, section, task)."""
        attr = f"{kind}s_{'deleted' if deleted else 'upserted'}"
        setattr(self, attr, getattr(self, attr) + 1)

    def summary(self) -> dict[str, Any]:
        """Get a summary for display."""
        return {
            "operation": self.operation,
            "duration": self.duration_seconds,
            "projects": f"{self.projects_upserted} upserted / {self.projects_deleted} deleted",
            "sections": f"{self.sections_upserted} upserted / {self.sections_deleted} deleted",
            "tasks": f"{self.tasks_upserted} upserted / {self.tasks_deleted} deleted",
            "cursor": mask_token(self.cursor_after),
            "server full sync": "yes" if self.server_full_sync else "no",
        }
