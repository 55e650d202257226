"""
Logging setup for Task Sync.

- Rich console output on stderr (stdout stays free for command output)
- JSON or plain formats for running under a service manager
- Rotating log file
- API token scrubbed from every record before it is emitted
"""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable

from rich.console import Console
from rich.logging import RichHandler


console = Console(stderr=True)

logger = logging.getLogger("task_sync")

# httpx logs every request URL at INFO
NOISY_LOGGERS = ("httpx", "httpcore")

REDACTED = "***"


class SecretFilter(logging.Filter):
    """Replace known secret values in log messages."""

    def __init__(self, secrets: Iterable[str]) -> None:
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if not self.secrets:
            return True
        message = record.getMessage()
        redacted = message
        for secret in self.secrets:
            redacted = redacted.replace(secret, REDACTED)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including fields passed via ``extra``."""

    _RESERVED = frozenset(
        logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in self._RESERVED and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def _console_handler(format_style: str) -> logging.Handler:
    if format_style == "rich":
        handler: logging.Handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        return handler

    handler = logging.StreamHandler(sys.stderr)
    if format_style == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    format_style: str = "rich",
    max_file_size_mb: int = 10,
    backup_count: int = 3,
    secrets: Iterable[str] = (),
) -> None:
    """
    Configure the ``task_sync`` logger. Safe to call more than once.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a rotating log file
        format_style: "rich", "json", or "simple"
        max_file_size_mb: Max log file size before rotation
        backup_count: Number of rotated files to keep
        secrets: Values (such as the API token) to scrub from messages
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(log_level)

    handlers = [_console_handler(format_style)]
    if log_file:
        file_path = Path(log_file)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            file_path,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setFormatter(
            JsonFormatter() if format_style == "json" else logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handlers.append(file_handler)

    secret_filter = SecretFilter(secrets)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(secret_filter)
        logger.addHandler(handler)

    noisy_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)


def get_logger(name: str = "task_sync") -> logging.Logger:
    return logging.getLogger(name)
