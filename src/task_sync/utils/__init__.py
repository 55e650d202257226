"""Utility modules for Task Sync."""

from task_sync.utils.logger import setup_logging, get_logger

__all__ = ["setup_logging", "get_logger"]
