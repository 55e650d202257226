"""
Sync Manager - full and incremental sync passes.

Coordinates one pass at a time:
- Reads the stored cursor and decides between full and incremental fetch
- Fetches a batch from the remote sync client
- Applies the batch (projects, then sections, then tasks) in one transaction
- Commits the new cursor together with the entity changes

Passes are serialized by a lock owned by the manager. A pass requested while
another is running waits for it and then re-reads the cursor, so it never
applies a batch fetched with a stale cursor.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from contextlib import AbstractContextManager, asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

from task_sync.core.state import PassStats, SyncPhase, SyncState, SyncStatus, mask_token
from task_sync.errors import StorageError, SyncError
from task_sync.models import (
    FULL_SYNC_CURSOR,
    SYNC_RESOURCE_KINDS,
    Project,
    Section,
    SyncBatch,
    Task,
)
from task_sync.utils.logger import get_logger


logger = get_logger(__name__)


class SyncClient(Protocol):
    """Remote side of the sync protocol."""

    async def fetch(self, cursor: str, resource_kinds: Iterable[str]) -> SyncBatch: ...


class SyncStore(Protocol):
    """Local side of the sync protocol."""

    def transaction(self) -> AbstractContextManager[Any]: ...
    def upsert_project(self, project: Project) -> None: ...
    def upsert_section(self, section: Section) -> None: ...
    def upsert_task(self, task: Task) -> None: ...
    def soft_delete_project(self, project_id: str) -> bool: ...
    def soft_delete_section(self, section_id: str) -> bool: ...
    def soft_delete_task(self, task_id: str) -> bool: ...
    def set_cursor(self, token: str) -> None: ...
    def set_last_sync_at(self, when: datetime) -> None: ...
    def set_initial_sync_done(self, done: bool) -> None: ...
    def get_state(self) -> SyncState: ...
    def reset_all_data(self) -> None: ...


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncManager:
    """
    Orchestrates sync passes between the remote client and the local store.

    Example:
        manager = SyncManager(client, store)

        await manager.full_sync()          # fetch everything
        await manager.incremental_sync()   # fetch changes since last cursor
        await manager.auto_sync(timedelta(minutes=5))

        print(manager.get_status())
    """

    def __init__(
        self,
        client: SyncClient,
        store: SyncStore,
        resource_kinds: Iterable[str] = SYNC_RESOURCE_KINDS,
        clock: Clock = utc_now,
    ) -> None:
        """
        Initialize the sync manager.

        Args:
            client: Remote sync client
            store: Transactional local store
            resource_kinds: Resource types requested on every fetch
            clock: Source of "now" for timestamps and auto-sync decisions
        """
        self.client = client
        self.store = store
        self.resource_kinds = tuple(resource_kinds)
        self.clock = clock
        self._pass_lock = asyncio.Lock()
        self._phase = SyncPhase.IDLE
        self._last_outcome: SyncPhase | None = None

    @property
    def phase(self) -> SyncPhase:
        """Phase of the pass in flight; IDLE between passes."""
        return self._phase

    @property
    def last_outcome(self) -> SyncPhase | None:
        """COMMITTED or FAILED for the most recent pass, None before the first."""
        return self._last_outcome

    @property
    def is_syncing(self) -> bool:
        """Whether a pass currently holds the pass lock."""
        return self._pass_lock.locked()

    # =========================================================================
    # Public operations
    # =========================================================================

    async def full_sync(self) -> PassStats:
        """
        Fetch the complete snapshot and replace local state with it.

        Marks the initial sync done. On any error the transaction is rolled
        back and the persisted state is left unchanged.
        """
        async with self._pass():
            return await self._full_sync_locked()

    async def force_full_sync(self) -> PassStats:
        """Re-run the full sync even when the replica is initialized."""
        logger.info("Starting forced full sync")
        return await self.full_sync()

    async def incremental_sync(self) -> PassStats:
        """
        Fetch and apply changes since the stored cursor.

        Falls back to a full sync when the initial sync never completed.
        """
        async with self._pass():
            return await self._incremental_sync_locked()

    async def auto_sync(self, interval: timedelta | float) -> PassStats | None:
        """
        Run an incremental sync if the last one is older than ``interval``.

        Returns the pass statistics, or None when no sync was needed.
        """
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)

        async with self._pass():
            # Checked under the lock so a tick queued behind another pass
            # sees that pass's timestamp
            if not self._should_sync(interval):
                logger.debug("Auto sync skipped: last sync is newer than %s", interval)
                return None
            return await self._incremental_sync_locked()

    async def reset(self) -> None:
        """
        Drop every replicated row and the sync metadata.

        Waits for an in-flight pass so it cannot commit its cursor into the
        wiped store.
        """
        async with self._pass():
            logger.info("Resetting local replica")
            self.store.reset_all_data()

    def get_status(self) -> SyncStatus:
        """Read-only snapshot of the persisted sync state."""
        return self.store.get_state().to_status()

    # =========================================================================
    # Pass implementation (callers hold the pass lock)
    # =========================================================================

    @asynccontextmanager
    async def _pass(self) -> AsyncIterator[None]:
        async with self._pass_lock:
            self._phase = SyncPhase.IDLE
            try:
                yield
            finally:
                if self._phase in (SyncPhase.COMMITTED, SyncPhase.FAILED):
                    self._last_outcome = self._phase
                self._phase = SyncPhase.IDLE

    def _should_sync(self, interval: timedelta) -> bool:
        last_sync_at = self.store.get_state().last_sync_at
        if last_sync_at is None:
            return True
        return self.clock() - last_sync_at > interval

    async def _full_sync_locked(self) -> PassStats:
        logger.info("Starting full sync")
        stats = PassStats(operation="full", cursor_before=FULL_SYNC_CURSOR)
        stats.start_time = time.time()

        batch = await self._fetch(FULL_SYNC_CURSOR, operation="full_sync")
        self._apply(batch, stats, operation="full_sync", full=True)

        stats.end_time = time.time()
        logger.info(
            "Full sync completed: %d projects, %d sections, %d tasks (%.2fs)",
            len(batch.projects),
            len(batch.sections),
            len(batch.tasks),
            stats.duration_seconds,
        )
        return stats

    async def _incremental_sync_locked(self) -> PassStats:
        state = self._read_state("incremental_sync")
        if not state.initial_sync_done:
            logger.info("Initial sync not done, running full sync first")
            return await self._full_sync_locked()

        logger.info("Starting incremental sync")
        stats = PassStats(operation="incremental", cursor_before=state.cursor)
        stats.start_time = time.time()

        batch = await self._fetch(state.cursor, operation="incremental_sync")
        if batch.full_sync:
            # Sent instead of a delta when the cursor has expired remotely
            logger.warning("Server returned a full snapshot; applying it as a full sync")
            stats.server_full_sync = True
            self._apply(batch, stats, operation="incremental_sync", full=True)
        elif batch.is_empty:
            logger.info("No changes since last sync")
            self._commit_metadata(batch.new_cursor, stats)
        else:
            self._apply(batch, stats, operation="incremental_sync", full=False)

        stats.end_time = time.time()
        if not batch.is_empty:
            logger.info(
                "Incremental sync completed: %d changes (%.2fs)",
                stats.total_changes,
                stats.duration_seconds,
            )
        return stats

    def _read_state(self, operation: str) -> SyncState:
        try:
            return self.store.get_state()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read sync state: {e}", operation=operation) from e

    async def _fetch(self, cursor: str, operation: str) -> SyncBatch:
        self._phase = SyncPhase.FETCHING
        logger.debug("Fetching batch with token %s", mask_token(cursor))
        try:
            batch = await self.client.fetch(cursor, self.resource_kinds)
        except SyncError as e:
            self._phase = SyncPhase.FAILED
            if e.operation is None:
                e.operation = operation
            raise
        except BaseException:
            # Cancellation or deadline: nothing was written
            self._phase = SyncPhase.FAILED
            raise
        return batch

    def _apply(
        self,
        batch: SyncBatch,
        stats: PassStats,
        operation: str,
        full: bool,
    ) -> None:
        """
        Apply a batch and its cursor in a single transaction.

        Runs without awaiting, so cancellation cannot interleave with the
        open transaction.
        """
        self._phase = SyncPhase.APPLYING
        try:
            with self.store.transaction():
                self._apply_entities(batch.projects, "project", stats, full)
                self._apply_entities(batch.sections, "section", stats, full)
                self._apply_entities(batch.tasks, "task", stats, full)

                self.store.set_cursor(batch.new_cursor)
                self.store.set_last_sync_at(self.clock())
                if full:
                    self.store.set_initial_sync_done(True)
        except SyncError as e:
            self._phase = SyncPhase.FAILED
            if e.operation is None:
                e.operation = operation
            logger.error("%s failed, changes rolled back: %s", operation, e)
            raise
        except sqlite3.Error as e:
            self._phase = SyncPhase.FAILED
            logger.error("%s failed, changes rolled back: %s", operation, e)
            raise StorageError(str(e), operation=operation) from e

        self._phase = SyncPhase.COMMITTED
        stats.cursor_after = batch.new_cursor

    def _apply_entities(
        self,
        entities: list[Project] | list[Section] | list[Task],
        kind: str,
        stats: PassStats,
        full: bool,
    ) -> None:
        if not entities:
            return

        logger.debug("Processing %d %s changes", len(entities), kind)
        upsert = getattr(self.store, f"upsert_{kind}")
        soft_delete = getattr(self.store, f"soft_delete_{kind}")

        for entity in entities:
            try:
                # A full snapshot stores tombstones as rows so later
                # incremental deletes stay idempotent
                if entity.is_deleted and not full:
                    changed = soft_delete(entity.id)
                else:
                    upsert(entity)
                    changed = True
            except SyncError as e:
                if e.entity_id is None:
                    e.entity_id = entity.id
                raise
            except sqlite3.Error as e:
                action = "delete" if entity.is_deleted else "upsert"
                raise StorageError(
                    f"Failed to {action} {kind}: {e}",
                    operation=f"{action}_{kind}",
                    entity_id=entity.id,
                ) from e
            if changed:
                stats.record(kind, deleted=entity.is_deleted)
            else:
                logger.debug("Delete of unknown %s %s ignored", kind, entity.id)

    def _commit_metadata(self, new_cursor: str, stats: PassStats) -> None:
        """Advance cursor and timestamp without touching entities."""
        self._phase = SyncPhase.APPLYING
        try:
            with self.store.transaction():
                self.store.set_cursor(new_cursor)
                self.store.set_last_sync_at(self.clock())
        except SyncError:
            self._phase = SyncPhase.FAILED
            raise
        except sqlite3.Error as e:
            self._phase = SyncPhase.FAILED
            raise StorageError(str(e), operation="incremental_sync") from e

        self._phase = SyncPhase.COMMITTED
        stats.cursor_after = new_cursor
