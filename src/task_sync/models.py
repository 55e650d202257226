"""
Domain types exchanged with the remote Sync API.

Each entity decodes from the JSON payload the remote returns. Tombstones
may arrive with only ``id`` and ``is_deleted`` set, so every other field
has a default.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


FULL_SYNC_CURSOR = "*"

RESOURCE_PROJECTS = "projects"
RESOURCE_SECTIONS = "sections"
RESOURCE_ITEMS = "items"

# Resource kinds the engine always requests, in apply order
SYNC_RESOURCE_KINDS = (RESOURCE_PROJECTS, RESOURCE_SECTIONS, RESOURCE_ITEMS)

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S",
)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a remote timestamp; empty or null values yield None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    text = str(value)
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError(f"Unrecognized timestamp: {text!r}") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


@dataclass
class Project:
    """A project container."""

    id: str
    name: str = ""
    color: str = ""
    parent_id: str = ""
    child_order: int = 0
    collapsed: bool = False
    shared: bool = False
    is_deleted: bool = False
    is_archived: bool = False
    is_favorite: bool = False
    inbox_project: bool = False
    team_inbox: bool = False
    sync_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        return cls(
            id=str(data["id"]),
            name=_str(data, "name"),
            color=_str(data, "color"),
            parent_id=_str(data, "parent_id"),
            child_order=int(data.get("child_order") or 0),
            collapsed=bool(data.get("collapsed", False)),
            shared=bool(data.get("shared", False)),
            is_deleted=bool(data.get("is_deleted", False)),
            is_archived=bool(data.get("is_archived", False)),
            is_favorite=bool(data.get("is_favorite", False)),
            inbox_project=bool(data.get("inbox_project", False)),
            team_inbox=bool(data.get("team_inbox", False)),
            sync_id=_str(data, "sync_id"),
        )


@dataclass
class Section:
    """A section inside a project."""

    id: str
    name: str = ""
    project_id: str = ""
    section_order: int = 0
    collapsed: bool = False
    sync_id: str = ""
    is_deleted: bool = False
    added_at: datetime | None = None
    archived_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Section":
        return cls(
            id=str(data["id"]),
            name=_str(data, "name"),
            project_id=_str(data, "project_id"),
            section_order=int(data.get("section_order") or 0),
            collapsed=bool(data.get("collapsed", False)),
            sync_id=_str(data, "sync_id"),
            is_deleted=bool(data.get("is_deleted", False)),
            added_at=parse_timestamp(data.get("added_at", data.get("date_added"))),
            archived_at=parse_timestamp(
                data.get("archived_at", data.get("date_archived"))
            ),
        )


@dataclass
class Due:
    """Due date information attached to a task."""

    date: str = ""
    string: str = ""
    lang: str = ""
    is_recurring: bool = False
    timezone: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Due":
        return cls(
            date=_str(data, "date"),
            string=_str(data, "string"),
            lang=_str(data, "lang"),
            is_recurring=bool(data.get("is_recurring", False)),
            timezone=_str(data, "timezone"),
        )


@dataclass
class Task:
    """A task (an "item" in the remote API)."""

    id: str
    project_id: str = ""
    content: str = ""
    description: str = ""
    user_id: str = ""
    section_id: str = ""
    parent_id: str = ""
    priority: int = 1
    child_order: int = 0
    day_order: int = 0
    collapsed: bool = False
    labels: list[str] = field(default_factory=list)
    assigned_by_uid: str = ""
    responsible_uid: str = ""
    added_at: datetime | None = None
    completed_at: datetime | None = None
    is_deleted: bool = False
    sync_id: str = ""
    due: Due | None = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        due = data.get("due")
        return cls(
            id=str(data["id"]),
            project_id=_str(data, "project_id"),
            content=_str(data, "content"),
            description=_str(data, "description"),
            user_id=_str(data, "user_id"),
            section_id=_str(data, "section_id"),
            parent_id=_str(data, "parent_id"),
            priority=int(data.get("priority") or 1),
            child_order=int(data.get("child_order") or 0),
            day_order=int(data.get("day_order") or 0),
            collapsed=bool(data.get("is_collapsed", data.get("collapsed", False))),
            labels=list(data.get("labels") or []),
            assigned_by_uid=_str(data, "assigned_by_uid"),
            responsible_uid=_str(data, "responsible_uid"),
            added_at=parse_timestamp(data.get("added_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            is_deleted=bool(data.get("is_deleted", False)),
            sync_id=_str(data, "sync_id"),
            due=Due.from_dict(due) if due else None,
        )


@dataclass
class SyncBatch:
    """One unit of remote changes, applied atomically."""

    new_cursor: str
    projects: list[Project] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    full_sync: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.projects or self.sections or self.tasks)

    def __len__(self) -> int:
        return len(self.projects) + len(self.sections) + len(self.tasks)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SyncBatch":
        """Build a batch from a decoded Sync API response body."""
        if "sync_token" not in data:
            raise ValueError("Sync response is missing sync_token")

        return cls(
            new_cursor=str(data["sync_token"]),
            projects=[Project.from_dict(p) for p in data.get("projects") or []],
            sections=[Section.from_dict(s) for s in data.get("sections") or []],
            tasks=[Task.from_dict(t) for t in data.get("items") or []],
            full_sync=bool(data.get("full_sync", False)),
        )
