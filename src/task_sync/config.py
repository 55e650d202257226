"""
Task Sync Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with TASK_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from task_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        api_token="your-token",
        sync={"auto_sync_interval_seconds": 120},
    )
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BASE_URL = "https://api.todoist.com"
DEFAULT_DATABASE_PATH = Path.home() / ".local" / "share" / "task-sync" / "replica.db"
REDACTED_TOKEN = "***REDACTED***"


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    auto_sync_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Minimum age of the last sync before the scheduler syncs again",
    )
    pass_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on a single fetch+apply pass",
    )
    background_sync: bool = Field(
        default=True,
        description="Run the background scheduler when the replica is opened",
    )
    initial_sync_on_startup: bool = Field(
        default=True,
        description="Run a full sync on startup if the replica was never initialized",
    )


class StorageConfig(BaseModel):
    """Local replica storage configuration."""

    database_path: Path = Field(
        default=DEFAULT_DATABASE_PATH,
        description="Path to the local SQLite replica",
    )

    @field_validator("database_path", mode="after")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        return v.expanduser()


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for Task Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (TASK_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export TASK_SYNC_API_TOKEN="your-token"
        export TASK_SYNC_SYNC__AUTO_SYNC_INTERVAL_SECONDS=60
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="TASK_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote API
    api_token: SecretStr = Field(
        default=SecretStr(""),
        description="API token for the remote task service",
    )
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Base URL of the remote Sync API",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="HTTP timeout for a single request",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request on rate limiting or transport errors",
    )

    # Nested configs
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("api_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle token from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @model_validator(mode="after")
    def strip_base_url(self) -> Self:
        self.base_url = self.base_url.rstrip("/")
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """
        Load settings from a TOML or JSON config file.

        A relative ``storage.database_path`` is resolved against the
        directory holding the config file.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(path.read_text())
        elif path.suffix == ".json":
            data = json.loads(path.read_text())
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        # Placeholder written by to_file
        if data.get("api_token") == REDACTED_TOKEN:
            del data["api_token"]

        storage = data.get("storage")
        if isinstance(storage, dict) and storage.get("database_path"):
            db_path = Path(storage["database_path"]).expanduser()
            if not db_path.is_absolute():
                storage["database_path"] = str(path.parent / db_path)

        return cls(**data)

    def to_file(self, path: Path | str) -> None:
        """Save settings to a TOML or JSON file. The API token is never written."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)
        data["api_token"] = REDACTED_TOKEN

        if path.suffix in (".toml", ".tml"):
            path.write_text(_to_toml(data))
        else:
            path.write_text(json.dumps(data, indent=2) + "\n")

    def validate_credentials(self) -> list[str]:
        """Validate that required credentials are present. Returns list of errors."""
        errors = []
        if not self.api_token.get_secret_value():
            errors.append("api_token is required (set TASK_SYNC_API_TOKEN or pass --api-token)")
        if not self.base_url:
            errors.append("base_url is required")
        return errors


def _to_toml(data: dict[str, Any]) -> str:
    """Write flat keys first, then one table per nested section."""
    lines = [
        "# task-sync configuration",
        "# api_token is redacted; set TASK_SYNC_API_TOKEN instead.",
    ]
    tables = {k: v for k, v in data.items() if isinstance(v, dict)}
    lines.extend(
        f"{key} = {json.dumps(value)}"
        for key, value in data.items()
        if key not in tables
    )
    for name, table in tables.items():
        lines.append("")
        lines.append(f"[{name}]")
        lines.extend(f"{key} = {json.dumps(value)}" for key, value in table.items())
    return "\n".join(lines) + "\n"


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Top-level settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if not config_file:
        return Settings(**overrides)

    settings = Settings.from_file(config_file)
    if not overrides:
        return settings
    return Settings.model_validate({**settings.model_dump(), **overrides})
