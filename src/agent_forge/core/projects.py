"""Project, branch rule, and attachment management operations."""

import sqlite3
from datetime import datetime

from agent_forge.db.engine import locked
from agent_forge.db.models import Attachment, BranchRule, Project, Task


@locked
def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    repo_path: str,
    default_branch: str = "main",
    slack_channel: str | None = None,
    working_branch: str | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects (id, name, repo_path, default_branch, slack_channel, working_branch)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (project_id, name, repo_path, default_branch, slack_channel, working_branch),
    )
    db.commit()
    return get_project(db, project_id)


@locked
def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


@locked
def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC").fetchall()
    return [_row_to_project(r) for r in rows]


@locked
def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {"name", "repo_path", "default_branch", "slack_channel"}
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


@locked
def set_working_branch(
    db: sqlite3.Connection,
    project_id: str,
    branch: str | None,
) -> Project | None:
    """Set (or clear with None) the persistent trunk branch of a project."""
    db.execute(
        "UPDATE projects SET working_branch = ?, updated_at = datetime('now') WHERE id = ?",
        (branch, project_id),
    )
    db.commit()
    return get_project(db, project_id)


@locked
def ensure_default_project(db: sqlite3.Connection, repo_path: str) -> Project:
    """Ensure a 'default' project exists, creating it if needed."""
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", repo_path)
    return project


def resolve_project_dir(db: sqlite3.Connection, task: Task) -> str:
    """Working directory for a task: its own dir, else its project's repo path."""
    if task.project_dir:
        return task.project_dir
    if task.project_id:
        project = get_project(db, task.project_id)
        if project:
            return project.repo_path
    return ""


# ── Branch protection rules ─────────────────────────────────────────────────


@locked
def add_branch_rule(db: sqlite3.Connection, project_id: str, pattern: str) -> BranchRule:
    """Protect a branch name or ``prefix*suffix`` pattern for a project."""
    if not get_project(db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    db.execute(
        "INSERT OR IGNORE INTO branch_rules (project_id, pattern) VALUES (?, ?)",
        (project_id, pattern),
    )
    db.commit()
    row = db.execute(
        "SELECT * FROM branch_rules WHERE project_id = ? AND pattern = ?",
        (project_id, pattern),
    ).fetchone()
    return _row_to_rule(row)


@locked
def list_branch_rules(db: sqlite3.Connection, project_id: str) -> list[BranchRule]:
    rows = db.execute(
        "SELECT * FROM branch_rules WHERE project_id = ? ORDER BY pattern",
        (project_id,),
    ).fetchall()
    return [_row_to_rule(r) for r in rows]


@locked
def remove_branch_rule(db: sqlite3.Connection, project_id: str, pattern: str) -> bool:
    result = db.execute(
        "DELETE FROM branch_rules WHERE project_id = ? AND pattern = ?",
        (project_id, pattern),
    )
    db.commit()
    return result.rowcount > 0


def protected_patterns(db: sqlite3.Connection, project_id: str | None) -> list[str]:
    if not project_id:
        return []
    return [rule.pattern for rule in list_branch_rules(db, project_id)]


# ── Attachments ─────────────────────────────────────────────────────────────


@locked
def add_attachment(
    db: sqlite3.Connection,
    task_id: str,
    filename: str,
    path: str,
    mime_type: str = "application/octet-stream",
) -> Attachment:
    """Attach a file (usually a screenshot or recording) to a task."""
    cur = db.execute(
        "INSERT INTO attachments (task_id, filename, mime_type, path) VALUES (?, ?, ?, ?)",
        (task_id, filename, mime_type, path),
    )
    db.commit()
    row = db.execute("SELECT * FROM attachments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_attachment(row)


@locked
def list_attachments(db: sqlite3.Connection, task_id: str) -> list[Attachment]:
    rows = db.execute(
        "SELECT * FROM attachments WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [_row_to_attachment(r) for r in rows]


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        repo_path=row["repo_path"],
        default_branch=row["default_branch"],
        working_branch=row["working_branch"],
        slack_channel=row["slack_channel"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_rule(row: sqlite3.Row) -> BranchRule:
    return BranchRule(
        id=row["id"],
        project_id=row["project_id"],
        pattern=row["pattern"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_attachment(row: sqlite3.Row) -> Attachment:
    return Attachment(
        id=row["id"],
        task_id=row["task_id"],
        filename=row["filename"],
        mime_type=row["mime_type"],
        path=row["path"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
