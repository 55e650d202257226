"""Shared fixtures for Task Sync tests."""

from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from task_sync.connectors.sqlite import SQLiteStore
from task_sync.models import Project, Section, SyncBatch, Task


def make_batch(
    cursor: str,
    projects: Iterable[dict[str, Any]] = (),
    sections: Iterable[dict[str, Any]] = (),
    tasks: Iterable[dict[str, Any]] = (),
) -> SyncBatch:
    """Build a SyncBatch from raw API-style dicts."""
    return SyncBatch(
        new_cursor=cursor,
        projects=[Project.from_dict(p) for p in projects],
        sections=[Section.from_dict(s) for s in sections],
        tasks=[Task.from_dict(t) for t in tasks],
    )


class FakeSyncClient:
    """In-memory sync client returning queued batches or raising queued errors."""

    def __init__(self, *responses: SyncBatch | BaseException) -> None:
        self.responses: list[SyncBatch | BaseException] = list(responses)
        self.calls: list[str] = []
        self.closed = False

    def queue(self, *responses: SyncBatch | BaseException) -> None:
        self.responses.extend(responses)

    async def fetch(self, cursor: str, resource_kinds: Iterable[str]) -> SyncBatch:
        self.calls.append(cursor)
        if not self.responses:
            return SyncBatch(new_cursor=cursor)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


class BlockingSyncClient(FakeSyncClient):
    """Sync client whose fetch blocks until ``release`` is set."""

    def __init__(self, *responses: SyncBatch | BaseException) -> None:
        super().__init__(*responses)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.cancelled = 0

    async def fetch(self, cursor: str, resource_kinds: Iterable[str]) -> SyncBatch:
        self.in_flight += 1
        self.entered.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.in_flight -= 1
        return await super().fetch(cursor, resource_kinds)


class FakeClock:
    """Controllable clock for auto-sync decisions."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true, failing the test after ``timeout``."""
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "replica.db"


@pytest.fixture
def store(db_path: Path):
    """A fresh SQLite store, closed after the test."""
    with SQLiteStore(db_path) as s:
        yield s


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def initial_batch() -> SyncBatch:
    """Full snapshot with one project, one section and two tasks."""
    return make_batch(
        "tok1",
        projects=[{"id": "p1", "name": "Inbox", "inbox_project": True}],
        sections=[{"id": "s1", "name": "Backlog", "project_id": "p1"}],
        tasks=[
            {"id": "t1", "project_id": "p1", "content": "Write report"},
            {
                "id": "t2",
                "project_id": "p1",
                "section_id": "s1",
                "content": "Review PR",
                "labels": ["work"],
            },
        ],
    )


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate tests from TASK_SYNC_* variables and any local .env file."""
    for key in list(os.environ):
        if key.startswith("TASK_SYNC_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
