"""
Task Sync CLI - Command Line Interface.

Commands:
    sync    Synchronize the local replica (incremental, or --full)
    status  Show sync status and replica contents
    reset   Delete all replicated data
    watch   Keep the replica current with background sync
    config  Manage configuration
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.table import Table

from task_sync import __version__
from task_sync.config import Settings, load_settings
from task_sync.connectors.sqlite import SQLiteStore
from task_sync.connectors.todoist_client import TodoistClient
from task_sync.core.manager import SyncClient, SyncManager
from task_sync.core.state import PassStats
from task_sync.errors import InvalidCursorError, SyncError
from task_sync.replica import LocalReplica
from task_sync.utils.display import (
    print_error,
    print_info,
    print_status,
    print_success,
    print_summary,
    print_warning,
)
from task_sync.utils.logger import setup_logging


app = typer.Typer(
    name="task-sync",
    help="Keep a local SQLite replica of your remote tasks in sync.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]task-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Task Sync - local replica of your remote projects, sections and tasks."""
    pass


ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
    dir_okay=False,
)
DatabaseOption = typer.Option(
    None,
    "--database",
    "-d",
    help="Path to the local replica database (overrides config).",
)


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    full: bool = typer.Option(
        False,
        "--full",
        "-f",
        help="Fetch everything from scratch instead of changes since the last sync.",
    ),
    api_token: Optional[str] = typer.Option(
        None,
        "--api-token",
        envvar="TASK_SYNC_API_TOKEN",
        help="API token for the remote service.",
    ),
    database: Optional[Path] = DatabaseOption,
    config_file: Optional[Path] = ConfigOption,
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """
    Synchronize the local replica with the remote service.

    Example:
        task-sync sync
        task-sync sync --full
    """
    settings = _load_or_exit(config_file, database=database, api_token=api_token)

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        print_info("Use --help for configuration options.")
        raise typer.Exit(1)

    _setup_logging(settings, quiet)

    try:
        stats = asyncio.run(_run_sync(settings, full))
    except InvalidCursorError as e:
        print_error(str(e))
        print_info("Run [bold]task-sync sync --full[/bold] to rebuild the replica.")
        raise typer.Exit(1)
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if not quiet:
        print_summary(stats)
    print_success(f"{stats.operation.capitalize()} sync completed successfully!")


async def _run_sync(settings: Settings, full: bool) -> PassStats:
    client = _create_client(settings)
    try:
        with SQLiteStore(settings.storage.database_path) as store:
            manager = SyncManager(client, store)
            with console.status("Syncing..."):
                if full:
                    return await manager.force_full_sync()
                return await manager.incremental_sync()
    finally:
        close = getattr(client, "close", None)
        if close is not None:
            await close()


def _create_client(settings: Settings) -> SyncClient:
    return TodoistClient.from_settings(settings)


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    database: Optional[Path] = DatabaseOption,
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Show current sync status and replica contents."""
    settings = _load_or_exit(config_file, database=database)
    db_path = settings.storage.database_path

    if not db_path.exists():
        print_info("No local replica found. Run [bold]task-sync sync[/bold] first.")
        raise typer.Exit(0)

    try:
        with SQLiteStore(db_path) as store:
            sync_status = store.get_state().to_status()
            counts = {
                table: store.count_rows(table, include_deleted=False)
                for table in ("projects", "sections", "tasks")
            }
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_status(sync_status, counts)


# =============================================================================
# RESET Command
# =============================================================================
@app.command()
def reset(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Skip confirmation prompt.",
    ),
    database: Optional[Path] = DatabaseOption,
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Delete all replicated data. The next sync starts from scratch."""
    settings = _load_or_exit(config_file, database=database)
    db_path = settings.storage.database_path

    if not db_path.exists():
        print_info("No local replica found. Nothing to reset.")
        raise typer.Exit(0)

    if not force:
        print_warning(f"This will delete all replicated data in {db_path}")
        if not typer.confirm("Are you sure you want to continue?"):
            print_info("Reset cancelled.")
            raise typer.Exit(0)

    try:
        with SQLiteStore(db_path) as store:
            store.reset_all_data()
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success("Local replica reset. Run [bold]task-sync sync[/bold] to rebuild it.")


# =============================================================================
# WATCH Command
# =============================================================================
@app.command()
def watch(
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        "-i",
        min=1.0,
        help="Seconds between syncs (overrides config).",
    ),
    api_token: Optional[str] = typer.Option(
        None,
        "--api-token",
        envvar="TASK_SYNC_API_TOKEN",
        help="API token for the remote service.",
    ),
    database: Optional[Path] = DatabaseOption,
    config_file: Optional[Path] = ConfigOption,
) -> None:
    """Keep the replica current until interrupted (Ctrl+C)."""
    settings = _load_or_exit(config_file, database=database, api_token=api_token)
    if interval is not None:
        settings.sync.auto_sync_interval_seconds = interval
    settings.sync.background_sync = True

    errors = settings.validate_credentials()
    if errors:
        for err in errors:
            print_error(err)
        raise typer.Exit(1)

    _setup_logging(settings, quiet=False)
    print_info(
        f"Watching for changes every {settings.sync.auto_sync_interval_seconds:g}s. "
        "Press Ctrl+C to stop."
    )

    try:
        asyncio.run(_run_watch(settings))
    except KeyboardInterrupt:
        print_info("Stopped.")
    except SyncError as e:
        print_error(str(e))
        raise typer.Exit(1)


async def _run_watch(settings: Settings) -> None:
    async with LocalReplica(settings, client=_create_client(settings)):
        await _wait_for_interrupt()


async def _wait_for_interrupt() -> None:
    """Block until Ctrl+C cancels the running loop."""
    await asyncio.Event().wait()


# =============================================================================
# CONFIG Command
# =============================================================================
@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    output: Path = typer.Option(
        Path("task-sync.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = Settings()
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        token_set = bool(settings.api_token.get_secret_value())
        table.add_row("API Token", "[green]set[/green]" if token_set else "[dim]not set[/dim]")
        table.add_row("Base URL", settings.base_url)
        table.add_row("Database", str(settings.storage.database_path))
        table.add_row("Sync Interval", f"{settings.sync.auto_sync_interval_seconds:g}s")
        table.add_row("Pass Timeout", f"{settings.sync.pass_timeout_seconds:g}s")
        table.add_row("Background Sync", str(settings.sync.background_sync))

        console.print(table)
        return

    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _load_or_exit(config_file: Path | None = None, **overrides: object) -> Settings:
    try:
        return _build_settings(config_file, **overrides)
    except (ValueError, FileNotFoundError) as e:
        print_error(str(e))
        raise typer.Exit(1)


def _build_settings(
    config_file: Path | None = None,
    **overrides: object,
) -> Settings:
    """Build settings from config file and overrides."""
    settings = load_settings(config_file)

    if overrides.get("api_token"):
        settings.api_token = SecretStr(str(overrides["api_token"]))
    if overrides.get("database"):
        settings.storage.database_path = Path(str(overrides["database"])).expanduser()

    return settings


def _setup_logging(settings: Settings, quiet: bool) -> None:
    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
        secrets=[settings.api_token.get_secret_value()],
    )


if __name__ == "__main__":
    app()
