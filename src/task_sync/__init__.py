"""Task Sync - local replica of a remote task service kept current via cursor-based sync."""

__version__ = "0.1.0"
__author__ = "Task Sync Contributors"

from task_sync.config import Settings, load_settings

__all__ = ["Settings", "load_settings", "__version__"]
