"""
Local Replica - wires the store, remote client, manager and scheduler.

Reads are always served from the local store; the scheduler keeps the
store current in the background.
"""

from __future__ import annotations

from typing import Any

from task_sync.config import Settings
from task_sync.connectors.sqlite import SQLiteStore
from task_sync.connectors.todoist_client import TodoistClient
from task_sync.core.manager import SyncClient, SyncManager
from task_sync.core.scheduler import BackgroundSyncer
from task_sync.core.state import PassStats, SyncStatus
from task_sync.models import Project, Section, Task
from task_sync.utils.logger import get_logger


logger = get_logger(__name__)


class LocalReplica:
    """
    Local-first access to the replicated projects, sections and tasks.

    Example:
        async with LocalReplica(settings) as replica:
            for task in replica.get_tasks():
                print(task.content)
    """

    def __init__(
        self,
        settings: Settings,
        client: SyncClient | None = None,
        store: SQLiteStore | None = None,
    ) -> None:
        self.settings = settings
        self.store = store or SQLiteStore(settings.storage.database_path)
        self.client = client or TodoistClient.from_settings(settings)
        self.manager = SyncManager(self.client, self.store)
        self.syncer: BackgroundSyncer | None = None
        if settings.sync.background_sync:
            self.syncer = BackgroundSyncer(
                self.manager,
                interval=settings.sync.auto_sync_interval_seconds,
                pass_timeout=settings.sync.pass_timeout_seconds,
            )

    async def open(self) -> None:
        """Run the startup sync if needed and start background sync."""
        if self.settings.sync.initial_sync_on_startup:
            if not self.manager.get_status().initial_sync_done:
                logger.info("Running initial sync")
                await self.manager.full_sync()

        if self.syncer is not None:
            self.syncer.start()

    async def close(self) -> None:
        """Stop background sync and release the client and store."""
        if self.syncer is not None:
            await self.syncer.stop()

        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
        self.store.close()

    async def __aenter__(self) -> "LocalReplica":
        try:
            await self.open()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self) -> PassStats:
        return await self.manager.incremental_sync()

    async def full_sync(self) -> PassStats:
        return await self.manager.force_full_sync()

    def get_status(self) -> SyncStatus:
        return self.manager.get_status()

    async def reset(self) -> None:
        """Drop every replicated row; the next sync starts from scratch."""
        await self.manager.reset()

    # =========================================================================
    # Reads
    # =========================================================================

    def get_projects(self) -> list[Project]:
        return self.store.list_projects()

    def get_sections(self, project_id: str | None = None) -> list[Section]:
        return self.store.list_sections(project_id=project_id)

    def get_tasks(self, project_id: str | None = None) -> list[Task]:
        return self.store.list_tasks(project_id=project_id)
