"""SQLite database connection management and schema initialization."""

import functools
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    repo_path TEXT NOT NULL,
    default_branch TEXT DEFAULT 'main',
    working_branch TEXT,
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS branch_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    pattern TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(project_id, pattern)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    acceptance_criteria TEXT DEFAULT '',
    status TEXT DEFAULT 'backlog'
        CHECK (status IN ('backlog', 'queued', 'progress', 'review', 'done', 'blocked')),
    priority INTEGER DEFAULT 2,
    current_iteration INTEGER DEFAULT 0,
    max_iterations INTEGER DEFAULT 10,
    logs TEXT DEFAULT '',
    error TEXT DEFAULT '',
    project_dir TEXT DEFAULT '',
    working_branch TEXT,
    target_branch TEXT,
    queue_position INTEGER DEFAULT 0,
    process_pid INTEGER DEFAULT 0,
    process_status TEXT DEFAULT 'idle',
    started_at TEXT,
    finished_at TEXT,
    rollback_tag TEXT,
    commit_hash TEXT,
    continue_message TEXT,
    conflict_pr_url TEXT,
    conflict_pr_number INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_queue ON tasks(status, queue_position);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    filename TEXT NOT NULL,
    mime_type TEXT DEFAULT 'application/octet-stream',
    path TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);
"""


class ForgeConnection(sqlite3.Connection):
    """Connection shared between the API and the supervisor threads.

    All store functions run under ``write_lock``.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.write_lock = threading.RLock()


def locked(fn):
    """Run a store function under the connection's write lock."""

    @functools.wraps(fn)
    def wrapper(db, *args, **kwargs):
        with db.write_lock:
            return fn(db, *args, **kwargs)

    return wrapper


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE projects ADD COLUMN working_branch TEXT",
        "ALTER TABLE tasks ADD COLUMN continue_message TEXT",
        "ALTER TABLE tasks ADD COLUMN conflict_pr_url TEXT",
        "ALTER TABLE tasks ADD COLUMN conflict_pr_number INTEGER DEFAULT 0",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists
    conn.commit()


def init_db(db_path: Path) -> ForgeConnection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path), factory=ForgeConnection, check_same_thread=False
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()
