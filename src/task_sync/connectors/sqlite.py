"""
SQLite Replica Store.

Local storage for the replicated projects, sections and tasks with:
- Embedded schema and idempotent schema-version bootstrap
- Explicit transaction scope (BEGIN / COMMIT / ROLLBACK)
- Idempotent upsert and soft-delete per entity kind
- Durable sync metadata (cursor, last sync time, initial-sync flag)
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Sequence

from task_sync.core.state import SyncState
from task_sync.errors import StorageError
from task_sync.models import FULL_SYNC_CURSOR, Due, Project, Section, Task, parse_timestamp
from task_sync.utils.logger import get_logger


logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    color TEXT,
    parent_id TEXT,
    child_order INTEGER DEFAULT 0,
    collapsed INTEGER DEFAULT 0,
    shared INTEGER DEFAULT 0,
    is_deleted INTEGER DEFAULT 0,
    is_archived INTEGER DEFAULT 0,
    is_favorite INTEGER DEFAULT 0,
    inbox_project INTEGER DEFAULT 0,
    team_inbox INTEGER DEFAULT 0,
    sync_id TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS sections (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    project_id TEXT NOT NULL DEFAULT '',
    section_order INTEGER DEFAULT 0,
    collapsed INTEGER DEFAULT 0,
    is_deleted INTEGER DEFAULT 0,
    sync_id TEXT,
    added_at TEXT,
    archived_at TEXT,
    updated_at TEXT
);

-- project/section/parent references are not enforced: remote batches may
-- reference containers the replica has not seen yet
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    project_id TEXT NOT NULL DEFAULT '',
    section_id TEXT,
    parent_id TEXT,
    content TEXT NOT NULL DEFAULT '',
    description TEXT,
    priority INTEGER DEFAULT 1,
    child_order INTEGER DEFAULT 0,
    day_order INTEGER DEFAULT 0,
    is_collapsed INTEGER DEFAULT 0,
    is_completed INTEGER DEFAULT 0,
    is_deleted INTEGER DEFAULT 0,
    assigned_by_uid TEXT,
    responsible_uid TEXT,
    sync_id TEXT,
    due_date TEXT,
    due_string TEXT,
    due_lang TEXT,
    due_is_recurring INTEGER,
    due_timezone TEXT,
    added_at TEXT,
    completed_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS task_labels (
    task_id TEXT NOT NULL,
    label_name TEXT NOT NULL,
    PRIMARY KEY (task_id, label_name)
);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_project_id ON tasks(project_id);
CREATE INDEX IF NOT EXISTS idx_tasks_section_id ON tasks(section_id);
CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_id);
CREATE INDEX IF NOT EXISTS idx_tasks_deleted ON tasks(is_deleted);
CREATE INDEX IF NOT EXISTS idx_sections_project_id ON sections(project_id);
CREATE INDEX IF NOT EXISTS idx_sections_deleted ON sections(is_deleted);
CREATE INDEX IF NOT EXISTS idx_projects_deleted ON projects(is_deleted);
"""

KEY_SYNC_TOKEN = "sync_token"
KEY_LAST_SYNC_TIME = "last_sync_time"
KEY_INITIAL_SYNC_DONE = "initial_sync_done"
KEY_SCHEMA_VERSION = "schema_version"

INITIAL_METADATA = {
    KEY_SYNC_TOKEN: FULL_SYNC_CURSOR,
    KEY_LAST_SYNC_TIME: "",
    KEY_INITIAL_SYNC_DONE: "false",
}

ENTITY_TABLES = ("projects", "sections", "tasks", "task_labels")


@dataclass(frozen=True)
class Migration:
    """A schema migration applied once, in version order."""

    version: int
    name: str
    sql: str


MIGRATIONS: tuple[Migration, ...] = (
    # Version 1 is the embedded schema itself
    Migration(version=1, name="initial_schema", sql=""),
)

CURRENT_SCHEMA_VERSION = max(m.version for m in MIGRATIONS)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _nullable(value: str) -> str | None:
    return value or None


class SQLiteStore:
    """
    Transactional SQLite storage for the local replica.

    Every entity and metadata write issued inside a ``transaction()`` block
    commits or rolls back together. Writes outside a transaction
    autocommit.

    Example:
        with SQLiteStore(Path("replica.db")) as store:
            with store.transaction():
                store.upsert_project(project)
                store.set_cursor("abc123")

            tasks = store.list_tasks(project_id=project.id)
    """

    def __init__(self, path: Path | str) -> None:
        """
        Open the store and bootstrap its schema.

        Args:
            path: Path to the SQLite database file (created if missing)
        """
        self.path = Path(path)
        self._connection: sqlite3.Connection | None = None
        self._in_transaction = False
        self._initialize_schema()

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None: transactions are opened explicitly
            conn = sqlite3.connect(
                self.path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=OFF")
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open database {self.path}: {e}", operation="open") from e
        return conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = self._create_connection()
        return self._connection

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Schema bootstrap
    # =========================================================================

    def _initialize_schema(self) -> None:
        """Create tables, seed metadata and run pending migrations."""
        try:
            self.conn.executescript(SCHEMA_SQL)
            for key, value in INITIAL_METADATA.items():
                self.conn.execute(
                    "INSERT OR IGNORE INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, _now()),
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize schema: {e}", operation="initialize_schema") from e

        current = self.get_schema_version()
        for migration in MIGRATIONS:
            if migration.version <= current:
                continue
            logger.debug("Applying migration %d (%s)", migration.version, migration.name)
            with self.transaction():
                if migration.sql:
                    for statement in migration.sql.split(";"):
                        if statement.strip():
                            self._execute(statement, operation=f"migration_{migration.version}")
                self._set_meta(KEY_SCHEMA_VERSION, str(migration.version))

    def get_schema_version(self) -> int:
        """Current schema version (0 when never bootstrapped)."""
        value = self._get_meta(KEY_SCHEMA_VERSION)
        if not value:
            return 0
        try:
            return int(value)
        except ValueError:
            raise StorageError(f"Invalid schema version: {value}", operation="get_schema_version") from None

    # =========================================================================
    # Transactions
    # =========================================================================

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed writes in one transaction.

        Commits on normal exit; rolls back and re-raises on any exception.
        Nested transactions are rejected.
        """
        if self._in_transaction:
            raise StorageError("Transaction already in progress", operation="begin")

        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise StorageError(f"Failed to begin transaction: {e}", operation="begin") from e

        self._in_transaction = True
        try:
            yield conn
        except BaseException:
            self._rollback(conn)
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(f"Failed to commit transaction: {e}", operation="commit") from e
        finally:
            self._in_transaction = False

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            # The original error is the one worth propagating
            logger.warning("Failed to roll back transaction: %s", e)

    def _execute(
        self,
        sql: str,
        params: Sequence[Any] = (),
        operation: str = "execute",
        entity_id: str | None = None,
    ) -> sqlite3.Cursor:
        """Execute a statement, translating driver errors to StorageError."""
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(str(e), operation=operation, entity_id=entity_id) from e

    # =========================================================================
    # Sync metadata
    # =========================================================================

    def _get_meta(self, key: str) -> str | None:
        row = self._execute(
            "SELECT value FROM sync_state WHERE key = ?", (key,), operation=f"get_{key}"
        ).fetchone()
        return row["value"] if row else None

    def _set_meta(self, key: str, value: str) -> None:
        self._execute(
            "INSERT OR REPLACE INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)",
            (key, value, _now()),
            operation=f"set_{key}",
        )

    def get_cursor(self) -> str:
        """Stored sync cursor; the full-sync sentinel when none is stored."""
        return self._get_meta(KEY_SYNC_TOKEN) or FULL_SYNC_CURSOR

    def set_cursor(self, token: str) -> None:
        self._set_meta(KEY_SYNC_TOKEN, token)

    def get_last_sync_at(self) -> datetime | None:
        value = self._get_meta(KEY_LAST_SYNC_TIME)
        if not value or value == "0":
            return None
        return parse_timestamp(value)

    def set_last_sync_at(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._set_meta(KEY_LAST_SYNC_TIME, when.isoformat())

    def get_initial_sync_done(self) -> bool:
        return self._get_meta(KEY_INITIAL_SYNC_DONE) == "true"

    def set_initial_sync_done(self, done: bool) -> None:
        self._set_meta(KEY_INITIAL_SYNC_DONE, "true" if done else "false")

    def get_state(self) -> SyncState:
        """Snapshot of the persisted sync metadata."""
        return SyncState(
            cursor=self.get_cursor(),
            last_sync_at=self.get_last_sync_at(),
            initial_sync_done=self.get_initial_sync_done(),
        )

    # =========================================================================
    # Entity writes
    # =========================================================================

    def upsert_project(self, project: Project) -> None:
        """Insert or replace a project by id."""
        self._execute(
            """
            INSERT OR REPLACE INTO projects (
                id, name, color, parent_id, child_order, collapsed, shared,
                is_deleted, is_archived, is_favorite, inbox_project, team_inbox,
                sync_id, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.id, project.name, _nullable(project.color),
                _nullable(project.parent_id), project.child_order,
                project.collapsed, project.shared, project.is_deleted,
                project.is_archived, project.is_favorite,
                project.inbox_project, project.team_inbox,
                _nullable(project.sync_id), _now(),
            ),
            operation="upsert_project",
            entity_id=project.id,
        )

    def upsert_section(self, section: Section) -> None:
        """Insert or replace a section by id."""
        self._execute(
            """
            INSERT OR REPLACE INTO sections (
                id, name, project_id, section_order, collapsed, is_deleted,
                sync_id, added_at, archived_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                section.id, section.name, section.project_id,
                section.section_order, section.collapsed, section.is_deleted,
                _nullable(section.sync_id), _ts(section.added_at),
                _ts(section.archived_at), _now(),
            ),
            operation="upsert_section",
            entity_id=section.id,
        )

    def upsert_task(self, task: Task) -> None:
        """Insert or replace a task by id, replacing its labels."""
        due = task.due
        self._execute(
            """
            INSERT OR REPLACE INTO tasks (
                id, user_id, project_id, section_id, parent_id, content,
                description, priority, child_order, day_order, is_collapsed,
                is_completed, is_deleted, assigned_by_uid, responsible_uid,
                sync_id, due_date, due_string, due_lang, due_is_recurring,
                due_timezone, added_at, completed_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                task.id, _nullable(task.user_id), task.project_id,
                _nullable(task.section_id), _nullable(task.parent_id),
                task.content, _nullable(task.description), task.priority,
                task.child_order, task.day_order, task.collapsed,
                task.is_completed, task.is_deleted,
                _nullable(task.assigned_by_uid), _nullable(task.responsible_uid),
                _nullable(task.sync_id),
                _nullable(due.date) if due else None,
                _nullable(due.string) if due else None,
                _nullable(due.lang) if due else None,
                due.is_recurring if due else None,
                _nullable(due.timezone) if due else None,
                _ts(task.added_at), _ts(task.completed_at), _now(),
            ),
            operation="upsert_task",
            entity_id=task.id,
        )

        self._execute(
            "DELETE FROM task_labels WHERE task_id = ?",
            (task.id,),
            operation="upsert_task_labels",
            entity_id=task.id,
        )
        for label in dict.fromkeys(task.labels):
            self._execute(
                "INSERT INTO task_labels (task_id, label_name) VALUES (?, ?)",
                (task.id, label),
                operation="upsert_task_labels",
                entity_id=task.id,
            )

    def _soft_delete(self, table: str, entity_id: str) -> bool:
        cursor = self._execute(
            f"UPDATE {table} SET is_deleted = 1, updated_at = ? WHERE id = ?",
            (_now(), entity_id),
            operation=f"soft_delete_{table}",
            entity_id=entity_id,
        )
        return cursor.rowcount > 0

    def soft_delete_project(self, project_id: str) -> bool:
        """Mark a project deleted. Returns False when the id is unknown."""
        return self._soft_delete("projects", project_id)

    def soft_delete_section(self, section_id: str) -> bool:
        """Mark a section deleted. Returns False when the id is unknown."""
        return self._soft_delete("sections", section_id)

    def soft_delete_task(self, task_id: str) -> bool:
        """Mark a task deleted. Returns False when the id is unknown."""
        return self._soft_delete("tasks", task_id)

    # =========================================================================
    # Reads
    # =========================================================================

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            color=row["color"] or "",
            parent_id=row["parent_id"] or "",
            child_order=row["child_order"] or 0,
            collapsed=bool(row["collapsed"]),
            shared=bool(row["shared"]),
            is_deleted=bool(row["is_deleted"]),
            is_archived=bool(row["is_archived"]),
            is_favorite=bool(row["is_favorite"]),
            inbox_project=bool(row["inbox_project"]),
            team_inbox=bool(row["team_inbox"]),
            sync_id=row["sync_id"] or "",
        )

    def _row_to_section(self, row: sqlite3.Row) -> Section:
        return Section(
            id=row["id"],
            name=row["name"],
            project_id=row["project_id"],
            section_order=row["section_order"] or 0,
            collapsed=bool(row["collapsed"]),
            sync_id=row["sync_id"] or "",
            is_deleted=bool(row["is_deleted"]),
            added_at=parse_timestamp(row["added_at"]),
            archived_at=parse_timestamp(row["archived_at"]),
        )

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        due = None
        if row["due_date"] or row["due_string"]:
            due = Due(
                date=row["due_date"] or "",
                string=row["due_string"] or "",
                lang=row["due_lang"] or "",
                is_recurring=bool(row["due_is_recurring"]),
                timezone=row["due_timezone"] or "",
            )

        return Task(
            id=row["id"],
            project_id=row["project_id"],
            content=row["content"],
            description=row["description"] or "",
            user_id=row["user_id"] or "",
            section_id=row["section_id"] or "",
            parent_id=row["parent_id"] or "",
            priority=row["priority"] or 1,
            child_order=row["child_order"] or 0,
            day_order=row["day_order"] or 0,
            collapsed=bool(row["is_collapsed"]),
            labels=self._get_task_labels(row["id"]),
            assigned_by_uid=row["assigned_by_uid"] or "",
            responsible_uid=row["responsible_uid"] or "",
            added_at=parse_timestamp(row["added_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            is_deleted=bool(row["is_deleted"]),
            sync_id=row["sync_id"] or "",
            due=due,
        )

    def _get_task_labels(self, task_id: str) -> list[str]:
        cursor = self._execute(
            "SELECT label_name FROM task_labels WHERE task_id = ? ORDER BY label_name",
            (task_id,),
            operation="get_task_labels",
            entity_id=task_id,
        )
        return [row["label_name"] for row in cursor]

    def get_project(self, project_id: str) -> Project | None:
        """Get a project by id, tombstoned or not."""
        row = self._execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,),
            operation="get_project", entity_id=project_id,
        ).fetchone()
        return self._row_to_project(row) if row else None

    def get_section(self, section_id: str) -> Section | None:
        """Get a section by id, tombstoned or not."""
        row = self._execute(
            "SELECT * FROM sections WHERE id = ?", (section_id,),
            operation="get_section", entity_id=section_id,
        ).fetchone()
        return self._row_to_section(row) if row else None

    def get_task(self, task_id: str) -> Task | None:
        """Get a task by id, tombstoned or not."""
        row = self._execute(
            "SELECT * FROM tasks WHERE id = ?", (task_id,),
            operation="get_task", entity_id=task_id,
        ).fetchone()
        return self._row_to_task(row) if row else None

    def list_projects(self, include_deleted: bool = False) -> list[Project]:
        """List projects in display order."""
        query = "SELECT * FROM projects"
        if not include_deleted:
            query += " WHERE is_deleted = 0"
        query += " ORDER BY child_order, id"
        return [self._row_to_project(row) for row in self._execute(query, operation="list_projects")]

    def list_sections(
        self,
        project_id: str | None = None,
        include_deleted: bool = False,
    ) -> list[Section]:
        """List sections, optionally limited to one project."""
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if not include_deleted:
            clauses.append("is_deleted = 0")

        query = "SELECT * FROM sections"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY section_order, id"
        return [
            self._row_to_section(row)
            for row in self._execute(query, params, operation="list_sections")
        ]

    def list_tasks(
        self,
        project_id: str | None = None,
        include_deleted: bool = False,
        include_completed: bool = True,
    ) -> list[Task]:
        """List tasks, optionally limited to one project."""
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if not include_deleted:
            clauses.append("is_deleted = 0")
        if not include_completed:
            clauses.append("is_completed = 0")

        query = "SELECT * FROM tasks"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY child_order, id"
        rows = self._execute(query, params, operation="list_tasks").fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_rows(self, table: str, include_deleted: bool = True) -> int:
        """Get the row count for an entity table."""
        if table not in ENTITY_TABLES:
            raise ValueError(f"Unknown table: {table}")

        query = f'SELECT COUNT(*) AS count FROM "{table}"'
        if not include_deleted and table != "task_labels":
            query += " WHERE is_deleted = 0"
        row = self._execute(query, operation="count_rows").fetchone()
        return row["count"] if row else 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reset_all_data(self) -> None:
        """
        Delete every replicated row and restore initial sync metadata.

        The schema version is preserved so the bootstrap does not re-run.
        """
        with self.transaction():
            for table in ENTITY_TABLES:
                self._execute(f'DELETE FROM "{table}"', operation="reset_all_data")
            for key, value in INITIAL_METADATA.items():
                self._set_meta(key, value)

        # VACUUM cannot run inside a transaction
        self._execute("VACUUM", operation="vacuum")
        logger.info("Local replica reset: %s", self.path)
