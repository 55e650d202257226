"""
Background Scheduler - timer-driven sync passes.

Runs ``SyncManager.auto_sync`` in a single long-lived asyncio task:
- One pass immediately on start, then one per interval
- Manual out-of-band passes via ``trigger_manual``
- Every pass bounded by a deadline; failures are logged, never fatal
- ``stop`` cancels and joins every pass the syncer started
"""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Awaitable, Callable

from task_sync.core.manager import SyncManager
from task_sync.core.state import PassStats
from task_sync.errors import DeadlineExceeded, SyncError
from task_sync.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_PASS_TIMEOUT = 30.0


def _seconds(value: timedelta | float) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class BackgroundSyncer:
    """
    Periodic background sync driver.

    Example:
        syncer = BackgroundSyncer(manager, interval=300)
        syncer.start()                 # first pass runs right away
        syncer.trigger_manual()        # out-of-band pass
        syncer.reschedule(60)          # new interval, applied immediately
        await syncer.stop()            # waits for in-flight passes to exit
    """

    def __init__(
        self,
        manager: SyncManager,
        interval: timedelta | float,
        pass_timeout: timedelta | float = DEFAULT_PASS_TIMEOUT,
    ) -> None:
        """
        Initialize the syncer.

        Args:
            manager: Sync manager driven by the timer
            interval: Seconds (or timedelta) between timer ticks
            pass_timeout: Upper bound on a single pass
        """
        interval_seconds = _seconds(interval)
        if interval_seconds <= 0:
            raise ValueError("interval must be positive")

        self.manager = manager
        self.pass_timeout = _seconds(pass_timeout)
        self._interval = interval_seconds
        self._running = False
        self._mu = threading.Lock()
        self._task: asyncio.Task[None] | None = None
        self._manual_tasks: set[asyncio.Task[PassStats | None]] = set()
        self._wakeup = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_error: Exception | None = None

    # =========================================================================
    # Accessors
    # =========================================================================

    def is_running(self) -> bool:
        with self._mu:
            return self._running

    def get_interval(self) -> float:
        """Current interval in seconds."""
        with self._mu:
            return self._interval

    @property
    def last_error(self) -> Exception | None:
        """Failure of the most recent pass, or None if it succeeded."""
        return self._last_error

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """
        Start the scheduling task. No-op if already running.

        Must be called from a running event loop.
        """
        with self._mu:
            if self._running:
                return
            self._running = True
            self._wakeup.clear()
            self._loop = asyncio.get_running_loop()
            self._task = self._loop.create_task(
                self._sync_loop(), name="task-sync-background"
            )
        logger.info("Background sync started (interval: %gs)", self.get_interval())

    async def stop(self) -> None:
        """
        Stop the scheduling task and wait until it has exited.

        In-flight manual passes are cancelled and joined as well. No-op if
        not running.
        """
        with self._mu:
            if not self._running:
                return
            self._running = False
            task = self._task
            self._task = None
            pending = [t for t in self._manual_tasks if not t.done()]

        tasks = [t for t in [task, *pending] if t is not None]
        for t in tasks:
            t.cancel()
        # return_exceptions so one cancelled task does not abort the join
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background sync stopped")

    def update_interval(self, interval: timedelta | float) -> None:
        """
        Change the interval used for future waits.

        A wait already in progress keeps its old deadline; use
        ``reschedule`` to apply the new interval immediately.
        """
        seconds = _seconds(interval)
        if seconds <= 0:
            raise ValueError("interval must be positive")
        with self._mu:
            self._interval = seconds

    def reschedule(self, interval: timedelta | float) -> None:
        """
        Change the interval and restart the current wait with it.

        May be called from any thread; the wakeup is handed to the loop
        that runs the scheduling task.
        """
        self.update_interval(interval)
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self._wakeup.set)
        else:
            self._wakeup.set()

    def trigger_manual(self) -> asyncio.Task[PassStats | None]:
        """
        Start an out-of-band incremental sync.

        Runs independently of the timer and does not change the running
        state. Returns the task so callers may await the result.
        """
        task = asyncio.get_running_loop().create_task(
            self._perform_sync(self.manager.incremental_sync, "Manual sync"),
            name="task-sync-manual",
        )
        self._manual_tasks.add(task)
        task.add_done_callback(self._manual_tasks.discard)
        return task

    # =========================================================================
    # Loop
    # =========================================================================

    async def _sync_loop(self) -> None:
        # Sync once at startup instead of waiting a full interval
        await self._perform_sync(self._auto_sync, "Background sync")

        while True:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.get_interval())
            except TimeoutError:
                await self._perform_sync(self._auto_sync, "Background sync")
            else:
                # Rescheduled: restart the wait with the new interval
                self._wakeup.clear()

    async def _auto_sync(self) -> PassStats | None:
        return await self.manager.auto_sync(timedelta(seconds=self.get_interval()))

    async def _perform_sync(
        self,
        run: Callable[[], Awaitable[PassStats | None]],
        label: str,
    ) -> PassStats | None:
        """Run one pass under the deadline, logging instead of raising."""
        try:
            result = await asyncio.wait_for(run(), timeout=self.pass_timeout)
        except TimeoutError:
            self._last_error = DeadlineExceeded(self.pass_timeout, operation=label)
            logger.error("%s failed: %s", label, self._last_error)
            return None
        except SyncError as e:
            self._last_error = e
            logger.error("%s failed: %s", label, e)
            return None
        except Exception as e:
            self._last_error = e
            logger.exception("%s failed with unexpected error: %s", label, e)
            return None

        self._last_error = None
        return result
