"""Storage and remote API connectors for Task Sync."""

from task_sync.connectors.sqlite import SQLiteStore
from task_sync.connectors.todoist_client import TodoistClient

__all__ = ["SQLiteStore", "TodoistClient"]
