"""
Rich Terminal Display Components.

Console output for the CLI:
- Pass summary tables
- Sync status table
- Status messages
"""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from task_sync.core.state import PassStats, SyncStatus


console = Console()


def print_summary(stats: PassStats) -> None:
    """Print a summary table after a sync pass."""
    table = Table(title="Sync Summary", border_style="green")

    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    for key, value in stats.summary().items():
        if key == "duration":
            value = f"{value:.2f}s"
        table.add_row(key.capitalize(), str(value))

    console.print(table)


def print_status(
    status: SyncStatus,
    counts: dict[str, int] | None = None,
) -> None:
    """Print the sync status with optional per-table row counts."""
    table = Table(title="Sync Status", border_style="blue")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("State", _format_state(status))
    table.add_row(
        "Last Sync",
        status.last_sync_time.strftime("%Y-%m-%d %H:%M:%S")
        if status.last_sync_time
        else "[dim]never[/dim]",
    )
    table.add_row("Sync Token", status.token_display)

    for name, count in (counts or {}).items():
        table.add_row(name.capitalize(), f"{count:,}")

    console.print(table)


def _format_state(status: SyncStatus) -> str:
    """Format state with color."""
    if not status.initial_sync_done:
        return "[red]✗ not initialized[/red]"
    if status.last_sync_time is None:
        return "[yellow]initialized (never synced)[/yellow]"
    return "[green]✓ initialized[/green]"


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
