"""Tests for the SQLite replica store."""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest

from task_sync.connectors.sqlite import (
    CURRENT_SCHEMA_VERSION,
    KEY_SCHEMA_VERSION,
    SQLiteStore,
)
from task_sync.core.state import SyncState
from task_sync.errors import StorageError
from task_sync.models import FULL_SYNC_CURSOR, Due, Project, Section, Task


@pytest.fixture
def seeded_store(store: SQLiteStore) -> SQLiteStore:
    """Store with two projects, a section and three tasks."""
    store.upsert_project(Project(id="p1", name="Inbox", inbox_project=True))
    store.upsert_project(Project(id="p2", name="Work", child_order=1))
    store.upsert_section(Section(id="s1", name="Backlog", project_id="p2"))
    store.upsert_task(Task(id="t1", project_id="p1", content="Buy milk", child_order=1))
    store.upsert_task(
        Task(
            id="t2",
            project_id="p2",
            section_id="s1",
            content="Ship release",
            labels=["work", "urgent"],
            child_order=2,
        )
    )
    store.upsert_task(
        Task(
            id="t3",
            project_id="p2",
            content="Done already",
            completed_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
            child_order=3,
        )
    )
    return store


class TestSchema:
    """Tests for schema bootstrap and metadata defaults."""

    def test_fresh_store_defaults(self, store: SQLiteStore) -> None:
        """A new replica starts uninitialized with the full-sync cursor."""
        assert store.get_state() == SyncState()
        assert store.get_cursor() == FULL_SYNC_CURSOR
        assert store.get_last_sync_at() is None
        assert store.get_initial_sync_done() is False
        assert store.get_schema_version() == CURRENT_SCHEMA_VERSION

    def test_bootstrap_is_idempotent(self, db_path: Path) -> None:
        """Reopening an existing replica keeps its metadata."""
        when = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        with SQLiteStore(db_path) as store:
            store.set_cursor("tok42")
            store.set_last_sync_at(when)
            store.set_initial_sync_done(True)

        with SQLiteStore(db_path) as reopened:
            assert reopened.get_cursor() == "tok42"
            assert reopened.get_last_sync_at() == when
            assert reopened.get_initial_sync_done() is True
            assert reopened.get_schema_version() == CURRENT_SCHEMA_VERSION

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "replica.db"

        with SQLiteStore(path):
            pass

        assert path.exists()

    def test_invalid_schema_version(self, store: SQLiteStore) -> None:
        store.conn.execute(
            "UPDATE sync_state SET value = 'abc' WHERE key = ?", (KEY_SCHEMA_VERSION,)
        )

        with pytest.raises(StorageError):
            store.get_schema_version()

    def test_naive_timestamp_stored_as_utc(self, store: SQLiteStore) -> None:
        store.set_last_sync_at(datetime(2024, 1, 1, 9, 0))

        assert store.get_last_sync_at() == datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestEntityWrites:
    """Tests for upsert and soft delete."""

    def test_upsert_and_get_project(self, store: SQLiteStore) -> None:
        project = Project(id="p1", name="Inbox", color="red", is_favorite=True)

        store.upsert_project(project)

        assert store.get_project("p1") == project
        assert store.get_project("missing") is None

    def test_upsert_replaces_existing(self, seeded_store: SQLiteStore) -> None:
        seeded_store.upsert_project(Project(id="p1", name="Renamed"))

        assert seeded_store.get_project("p1").name == "Renamed"
        assert seeded_store.count_rows("projects") == 2

    def test_task_round_trip_with_due(self, store: SQLiteStore) -> None:
        task = Task(
            id="t1",
            project_id="p1",
            content="Pay rent",
            priority=3,
            labels=["home"],
            due=Due(date="2024-02-01", string="every month", is_recurring=True),
            added_at=datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
        )

        store.upsert_task(task)

        assert store.get_task("t1") == task

    def test_task_labels_replaced(self, seeded_store: SQLiteStore) -> None:
        """Upserting a task replaces its label set."""
        task = seeded_store.get_task("t2")
        assert task.labels == ["urgent", "work"]

        task.labels = ["later", "later"]
        seeded_store.upsert_task(task)

        assert seeded_store.get_task("t2").labels == ["later"]
        assert seeded_store.count_rows("task_labels") == 1

    def test_soft_delete_keeps_row(self, seeded_store: SQLiteStore) -> None:
        assert seeded_store.soft_delete_task("t1") is True

        task = seeded_store.get_task("t1")
        assert task.is_deleted is True
        assert task.content == "Buy milk"
        assert "t1" not in [t.id for t in seeded_store.list_tasks()]
        assert "t1" in [t.id for t in seeded_store.list_tasks(include_deleted=True)]

    def test_soft_delete_unknown_id(self, store: SQLiteStore) -> None:
        assert store.soft_delete_project("nope") is False
        assert store.soft_delete_section("nope") is False
        assert store.soft_delete_task("nope") is False
        assert store.count_rows("projects") == 0

    def test_soft_delete_is_idempotent(self, seeded_store: SQLiteStore) -> None:
        seeded_store.soft_delete_section("s1")
        first = seeded_store.get_section("s1")
        seeded_store.soft_delete_section("s1")

        assert seeded_store.get_section("s1") == first


class TestTransactions:
    """Tests for explicit transaction scope."""

    def test_commit(self, store: SQLiteStore) -> None:
        with store.transaction():
            store.upsert_project(Project(id="p1", name="Inbox"))
            store.set_cursor("tok1")

        assert store.get_project("p1") is not None
        assert store.get_cursor() == "tok1"
        assert store.in_transaction is False

    def test_rollback_on_error(self, store: SQLiteStore) -> None:
        """Entity and metadata writes roll back together."""
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.upsert_project(Project(id="p1", name="Inbox"))
                store.set_cursor("tok1")
                raise RuntimeError("boom")

        assert store.get_project("p1") is None
        assert store.get_cursor() == FULL_SYNC_CURSOR
        assert store.in_transaction is False

    def test_nested_transaction_rejected(self, store: SQLiteStore) -> None:
        with store.transaction():
            with pytest.raises(StorageError):
                with store.transaction():
                    pass

    def test_driver_errors_wrapped(self, store: SQLiteStore) -> None:
        store.conn.execute("DROP TABLE tasks")

        with pytest.raises(StorageError) as exc_info:
            store.upsert_task(Task(id="t1"))

        assert exc_info.value.entity_id == "t1"
        assert exc_info.value.operation == "upsert_task"
        assert isinstance(exc_info.value.__cause__, sqlite3.Error)


class TestReads:
    """Tests for list and count queries."""

    def test_list_projects(self, seeded_store: SQLiteStore) -> None:
        assert [p.id for p in seeded_store.list_projects()] == ["p1", "p2"]

    def test_list_sections_by_project(self, seeded_store: SQLiteStore) -> None:
        assert [s.id for s in seeded_store.list_sections(project_id="p2")] == ["s1"]
        assert seeded_store.list_sections(project_id="p1") == []

    def test_list_tasks_filters(self, seeded_store: SQLiteStore) -> None:
        assert [t.id for t in seeded_store.list_tasks()] == ["t1", "t2", "t3"]
        assert [t.id for t in seeded_store.list_tasks(project_id="p2")] == ["t2", "t3"]
        assert [t.id for t in seeded_store.list_tasks(include_completed=False)] == ["t1", "t2"]

    def test_count_rows(self, seeded_store: SQLiteStore) -> None:
        seeded_store.soft_delete_task("t1")

        assert seeded_store.count_rows("tasks") == 3
        assert seeded_store.count_rows("tasks", include_deleted=False) == 2
        assert seeded_store.count_rows("task_labels", include_deleted=False) == 2

    def test_count_rows_unknown_table(self, store: SQLiteStore) -> None:
        with pytest.raises(ValueError):
            store.count_rows("sync_state")


class TestReset:
    """Tests for reset_all_data."""

    def test_reset_clears_data_and_metadata(self, seeded_store: SQLiteStore) -> None:
        seeded_store.set_cursor("tok9")
        seeded_store.set_initial_sync_done(True)
        seeded_store.set_last_sync_at(datetime.now(timezone.utc))

        seeded_store.reset_all_data()

        for table in ("projects", "sections", "tasks", "task_labels"):
            assert seeded_store.count_rows(table) == 0
        assert seeded_store.get_state() == SyncState()
        assert seeded_store.get_schema_version() == CURRENT_SCHEMA_VERSION
