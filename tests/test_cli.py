"""Tests for the command line interface."""

import asyncio
from pathlib import Path

import pytest
from typer.testing import CliRunner

from task_sync import __version__, cli
from task_sync.connectors.sqlite import SQLiteStore
from task_sync.errors import InvalidCursorError, TransportError
from task_sync.models import FULL_SYNC_CURSOR, Project

from conftest import FakeSyncClient, make_batch


runner = CliRunner()


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> FakeSyncClient:
    """Replace the remote client the CLI builds with an in-memory one."""
    client = FakeSyncClient()
    monkeypatch.setattr(cli, "_create_client", lambda settings: client)
    return client


class TestCli:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        result = runner.invoke(cli.app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_status_without_replica(self, db_path: Path) -> None:
        result = runner.invoke(cli.app, ["status", "--database", str(db_path)])

        assert result.exit_code == 0
        assert "No local replica found" in result.output
        assert not db_path.exists()

    def test_status_with_replica(self, db_path: Path) -> None:
        with SQLiteStore(db_path) as store:
            store.upsert_project(Project(id="p1", name="Inbox"))
            store.set_cursor("0123456789abcdef")
            store.set_initial_sync_done(True)

        result = runner.invoke(cli.app, ["status", "--database", str(db_path)])

        assert result.exit_code == 0
        assert "01234567..." in result.output
        assert "0123456789abcdef" not in result.output
        assert "Projects" in result.output

    def test_sync_requires_token(self, db_path: Path, fake_client: FakeSyncClient) -> None:
        result = runner.invoke(cli.app, ["sync", "--database", str(db_path)])

        assert result.exit_code == 1
        assert "api_token is required" in result.output
        assert fake_client.calls == []

    def test_sync_incremental_self_heals(
        self, db_path: Path, fake_client: FakeSyncClient
    ) -> None:
        """The first sync on a fresh replica is a full sync."""
        fake_client.queue(
            make_batch(
                "tok1",
                projects=[{"id": "p1", "name": "Inbox"}],
                tasks=[{"id": "t1", "project_id": "p1", "content": "Write report"}],
            )
        )

        result = runner.invoke(
            cli.app,
            ["sync", "--database", str(db_path), "--api-token", "secret", "--quiet"],
        )

        assert result.exit_code == 0, result.output
        assert fake_client.calls == [FULL_SYNC_CURSOR]
        assert fake_client.closed is True
        with SQLiteStore(db_path) as store:
            assert store.get_cursor() == "tok1"
            assert store.get_task("t1").content == "Write report"

    def test_sync_full(self, db_path: Path, fake_client: FakeSyncClient) -> None:
        with SQLiteStore(db_path) as store:
            store.set_cursor("tok1")
            store.set_initial_sync_done(True)
        fake_client.queue(make_batch("tok2"))

        result = runner.invoke(
            cli.app,
            ["sync", "--full", "--database", str(db_path), "--api-token", "secret"],
        )

        assert result.exit_code == 0, result.output
        assert fake_client.calls == [FULL_SYNC_CURSOR]
        assert "Full sync completed" in result.output

    def test_sync_invalid_cursor_hint(self, db_path: Path, fake_client: FakeSyncClient) -> None:
        with SQLiteStore(db_path) as store:
            store.set_cursor("stale")
            store.set_initial_sync_done(True)
        fake_client.queue(InvalidCursorError("Remote rejected sync token", status=400))

        result = runner.invoke(
            cli.app,
            ["sync", "--database", str(db_path), "--api-token", "secret"],
        )

        assert result.exit_code == 1
        assert "--full" in result.output
        with SQLiteStore(db_path) as store:
            assert store.get_cursor() == "stale"

    def test_reset_force(self, db_path: Path) -> None:
        with SQLiteStore(db_path) as store:
            store.upsert_project(Project(id="p1", name="Inbox"))
            store.set_cursor("tok1")
            store.set_initial_sync_done(True)

        result = runner.invoke(cli.app, ["reset", "--force", "--database", str(db_path)])

        assert result.exit_code == 0
        with SQLiteStore(db_path) as store:
            assert store.count_rows("projects") == 0
            assert store.get_cursor() == FULL_SYNC_CURSOR
            assert store.get_initial_sync_done() is False

    def test_reset_cancelled(self, db_path: Path) -> None:
        with SQLiteStore(db_path) as store:
            store.upsert_project(Project(id="p1", name="Inbox"))

        result = runner.invoke(cli.app, ["reset", "--database", str(db_path)], input="n\n")

        assert result.exit_code == 0
        assert "cancelled" in result.output
        with SQLiteStore(db_path) as store:
            assert store.count_rows("projects") == 1

    def test_config_init(self, tmp_path: Path) -> None:
        output = tmp_path / "task-sync.toml"

        result = runner.invoke(cli.app, ["config", "--init", "--output", str(output)])

        assert result.exit_code == 0
        assert output.exists()
        assert "[sync]" in output.read_text()


class TestWatch:
    """Tests for the watch command."""

    @pytest.fixture(autouse=True)
    def short_watch(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """End the watch loop shortly after startup instead of waiting for Ctrl+C."""
        async def wait_briefly() -> None:
            await asyncio.sleep(0.05)

        monkeypatch.setattr(cli, "_wait_for_interrupt", wait_briefly)

    def test_watch_syncs_and_shuts_down(
        self, db_path: Path, fake_client: FakeSyncClient, initial_batch
    ) -> None:
        """Startup sync lands in the store and the client is closed on exit."""
        fake_client.queue(initial_batch)

        result = runner.invoke(
            cli.app,
            ["watch", "--database", str(db_path), "--api-token", "secret", "--interval", "60"],
        )

        assert result.exit_code == 0, result.output
        assert "Watching for changes every 60s" in result.output
        assert fake_client.calls == [FULL_SYNC_CURSOR]
        assert fake_client.closed is True
        with SQLiteStore(db_path) as store:
            assert store.get_cursor() == "tok1"
            assert store.count_rows("tasks") == 2

    def test_watch_requires_token(self, db_path: Path, fake_client: FakeSyncClient) -> None:
        result = runner.invoke(cli.app, ["watch", "--database", str(db_path)])

        assert result.exit_code == 1
        assert "api_token is required" in result.output
        assert fake_client.calls == []

    def test_watch_startup_failure_exits_nonzero(
        self, db_path: Path, fake_client: FakeSyncClient
    ) -> None:
        fake_client.queue(TransportError("service unavailable"))

        result = runner.invoke(
            cli.app,
            ["watch", "--database", str(db_path), "--api-token", "secret"],
        )

        assert result.exit_code == 1
        assert "service unavailable" in result.output
        assert fake_client.closed is True
