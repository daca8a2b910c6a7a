"""Task management operations."""

import re
import sqlite3
import uuid
from datetime import datetime

from agent_forge.core.projects import list_attachments
from agent_forge.db.engine import locked
from agent_forge.db.models import (
    BACKLOG,
    BLOCKED,
    DONE,
    PROGRESS,
    QUEUED,
    TASK_STATUSES,
    Task,
    TaskEvent,
)


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60]


@locked
def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str | None = None,
    description: str = "",
    acceptance_criteria: str = "",
    priority: int = 2,
    max_iterations: int = 10,
    project_dir: str = "",
    target_branch: str | None = None,
) -> Task:
    """Create a new task in the backlog."""
    task_id = str(uuid.uuid4())
    priority = max(1, min(3, priority))
    max_iterations = max(1, max_iterations)

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, acceptance_criteria,
                              priority, max_iterations, project_dir, target_branch)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, acceptance_criteria,
         priority, max_iterations, project_dir, target_branch),
    )
    _log_event(db, task_id, "created", None, BACKLOG)
    db.commit()
    return get_task(db, task_id)


@locked
def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.attachments = list_attachments(db, task_id)
    return task


@locked
def list_tasks(
    db: sqlite3.Connection,
    project_id: str | None = None,
    status: str | None = None,
) -> list[Task]:
    """List tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE 1=1"
    params: list = []

    if project_id:
        query += " AND project_id = ?"
        params.append(project_id)

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY priority ASC, created_at ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


@locked
def remove_from_queue(db: sqlite3.Connection, task_id: str) -> None:
    """Clear a task's slot and close the gap it leaves."""
    row = db.execute(
        "SELECT queue_position FROM tasks WHERE id = ?", (task_id,)
    ).fetchone()
    if not row or not row["queue_position"]:
        return
    position = row["queue_position"]
    db.execute(
        "UPDATE tasks SET queue_position = 0, updated_at = datetime('now') WHERE id = ?",
        (task_id,),
    )
    db.execute(
        """UPDATE tasks SET queue_position = queue_position - 1
           WHERE status = ? AND queue_position > ?""",
        (QUEUED, position),
    )
    _log_event(db, task_id, "dequeued", str(position), None)
    db.commit()


@locked
def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
) -> Task | None:
    """Update a task's status. Returns the updated task."""
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    task = get_task(db, task_id)
    if not task:
        return None

    old_status = task.status
    if old_status == QUEUED and status != QUEUED:
        remove_from_queue(db, task_id)
    updates = {"status": status}

    if status == DONE and old_status != DONE:
        updates["completed_at"] = datetime.now().isoformat(sep=" ", timespec="seconds")

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]

    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    _log_event(db, task_id, "status_changed", old_status, status)
    db.commit()
    return get_task(db, task_id)


@locked
def update_task_fields(db: sqlite3.Connection, task_id: str, **kwargs) -> Task | None:
    """Update editable task fields (title, description, criteria, limits)."""
    allowed = {
        "title", "description", "acceptance_criteria", "priority",
        "max_iterations", "project_dir", "project_id", "target_branch",
    }
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if not updates:
        return get_task(db, task_id)
    set_clause = ", ".join(f"{k} = ?" for k in updates)
    db.execute(
        f"UPDATE tasks SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    db.commit()
    return get_task(db, task_id)


@locked
def update_task_error(db: sqlite3.Connection, task_id: str, error: str):
    db.execute(
        "UPDATE tasks SET error = ?, updated_at = datetime('now') WHERE id = ?",
        (error, task_id),
    )
    db.commit()


@locked
def block_task(db: sqlite3.Connection, task_id: str, reason: str) -> Task | None:
    """Move a task to 'blocked' and record why."""
    task = update_task_status(db, task_id, BLOCKED)
    if task is None:
        return None
    update_task_error(db, task_id, reason)
    return get_task(db, task_id)


@locked
def update_task_iteration(db: sqlite3.Connection, task_id: str, iteration: int):
    db.execute(
        "UPDATE tasks SET current_iteration = ?, updated_at = datetime('now') WHERE id = ?",
        (iteration, task_id),
    )
    db.commit()


@locked
def update_task_branches(
    db: sqlite3.Connection,
    task_id: str,
    working_branch: str | None = None,
    target_branch: str | None = None,
):
    """Set the working and/or target branch. None leaves a field unchanged."""
    if working_branch is not None:
        db.execute(
            "UPDATE tasks SET working_branch = ?, updated_at = datetime('now') WHERE id = ?",
            (working_branch, task_id),
        )
        _log_event(db, task_id, "working_branch", None, working_branch)
    if target_branch is not None:
        db.execute(
            "UPDATE tasks SET target_branch = ?, updated_at = datetime('now') WHERE id = ?",
            (target_branch, task_id),
        )
    db.commit()


@locked
def append_task_logs(db: sqlite3.Connection, task_id: str, text: str):
    db.execute(
        "UPDATE tasks SET logs = COALESCE(logs, '') || ?, updated_at = datetime('now') WHERE id = ?",
        (text, task_id),
    )
    db.commit()


@locked
def reset_task_for_progress(db: sqlite3.Connection, task_id: str):
    """Clear per-run state before a fresh progress run."""
    db.execute(
        """UPDATE tasks SET
               current_iteration = 0,
               logs = '',
               error = '',
               working_branch = NULL,
               updated_at = datetime('now')
           WHERE id = ?""",
        (task_id,),
    )
    db.commit()


@locked
def update_task_process_info(
    db: sqlite3.Connection,
    task_id: str,
    pid: int,
    process_status: str,
):
    db.execute(
        """UPDATE tasks SET process_pid = ?, process_status = ?, updated_at = datetime('now')
           WHERE id = ?""",
        (pid, process_status, task_id),
    )
    if pid:
        _log_event(db, task_id, "process_started", None, str(pid))
    else:
        _log_event(db, task_id, "process_cleared", None, process_status)
    db.commit()


@locked
def mark_task_started(db: sqlite3.Connection, task_id: str):
    db.execute(
        "UPDATE tasks SET started_at = datetime('now'), finished_at = NULL WHERE id = ?",
        (task_id,),
    )
    db.commit()


@locked
def mark_task_finished(db: sqlite3.Connection, task_id: str):
    db.execute(
        "UPDATE tasks SET finished_at = datetime('now') WHERE id = ?",
        (task_id,),
    )
    db.commit()


@locked
def update_task_rollback_tag(db: sqlite3.Connection, task_id: str, tag: str | None):
    db.execute(
        "UPDATE tasks SET rollback_tag = ?, updated_at = datetime('now') WHERE id = ?",
        (tag, task_id),
    )
    db.commit()


@locked
def update_task_commit_hash(db: sqlite3.Connection, task_id: str, commit_hash: str):
    db.execute(
        "UPDATE tasks SET commit_hash = ?, updated_at = datetime('now') WHERE id = ?",
        (commit_hash, task_id),
    )
    db.commit()


@locked
def set_continue_message(db: sqlite3.Connection, task_id: str, message: str | None):
    db.execute(
        "UPDATE tasks SET continue_message = ?, updated_at = datetime('now') WHERE id = ?",
        (message or None, task_id),
    )
    db.commit()


@locked
def update_task_conflict_pr(
    db: sqlite3.Connection,
    task_id: str,
    pr_url: str | None,
    pr_number: int = 0,
) -> Task | None:
    """Set or clear the pull request opened for a merge conflict."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        """UPDATE tasks SET conflict_pr_url = ?, conflict_pr_number = ?,
               updated_at = datetime('now') WHERE id = ?""",
        (pr_url, pr_number, task_id),
    )
    _log_event(db, task_id, "conflict_pr", task.conflict_pr_url, pr_url)
    db.commit()
    return get_task(db, task_id)


@locked
def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task with its events and attachments."""
    task = get_task(db, task_id)
    if not task:
        return False
    remove_from_queue(db, task_id)
    db.execute("DELETE FROM attachments WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


@locked
def find_task_in_progress(
    db: sqlite3.Connection,
    exclude: str | None = None,
) -> Task | None:
    """Return the task currently in 'progress', ignoring ``exclude``."""
    row = db.execute(
        "SELECT * FROM tasks WHERE status = ? AND id != ? LIMIT 1",
        (PROGRESS, exclude or ""),
    ).fetchone()
    if not row:
        return None
    return _row_to_task(row)


@locked
def list_tasks_with_process(db: sqlite3.Connection) -> list[Task]:
    """Tasks whose persisted process id is non-zero."""
    rows = db.execute(
        "SELECT * FROM tasks WHERE process_pid IS NOT NULL AND process_pid != 0"
    ).fetchall()
    return [_row_to_task(r) for r in rows]


@locked
def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        acceptance_criteria=row["acceptance_criteria"] or "",
        status=row["status"],
        priority=row["priority"] if row["priority"] is not None else 2,
        current_iteration=row["current_iteration"] or 0,
        max_iterations=row["max_iterations"] or 10,
        logs=row["logs"] or "",
        error=row["error"] or "",
        project_dir=row["project_dir"] or "",
        working_branch=row["working_branch"],
        target_branch=row["target_branch"],
        queue_position=row["queue_position"] or 0,
        process_pid=row["process_pid"] or 0,
        process_status=row["process_status"] or "idle",
        started_at=_parse_dt(row["started_at"]),
        finished_at=_parse_dt(row["finished_at"]),
        rollback_tag=row["rollback_tag"],
        commit_hash=row["commit_hash"],
        continue_message=row["continue_message"],
        conflict_pr_url=row["conflict_pr_url"],
        conflict_pr_number=row["conflict_pr_number"] or 0,
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
