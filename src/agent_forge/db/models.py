"""Data models for agent forge."""

from dataclasses import dataclass, field
from datetime import datetime

# Task statuses
BACKLOG = "backlog"
QUEUED = "queued"
PROGRESS = "progress"
REVIEW = "review"
DONE = "done"
BLOCKED = "blocked"

TASK_STATUSES = (BACKLOG, QUEUED, PROGRESS, REVIEW, DONE, BLOCKED)

# Process statuses
PROCESS_IDLE = "idle"
PROCESS_RUNNING = "running"
PROCESS_FINISHED = "finished"
PROCESS_ERROR = "error"


@dataclass
class Project:
    id: str
    name: str
    repo_path: str
    default_branch: str = "main"
    working_branch: str | None = None
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BranchRule:
    id: int | None = None
    project_id: str = ""
    pattern: str = ""
    created_at: datetime | None = None


@dataclass
class Attachment:
    id: int | None = None
    task_id: str = ""
    filename: str = ""
    mime_type: str = "application/octet-stream"
    path: str = ""
    created_at: datetime | None = None


@dataclass
class Task:
    id: str
    title: str
    project_id: str | None = None
    description: str = ""
    acceptance_criteria: str = ""
    status: str = BACKLOG
    priority: int = 2
    current_iteration: int = 0
    max_iterations: int = 10
    logs: str = ""
    error: str = ""
    project_dir: str = ""
    working_branch: str | None = None
    target_branch: str | None = None
    queue_position: int = 0
    process_pid: int = 0
    process_status: str = PROCESS_IDLE
    started_at: datetime | None = None
    finished_at: datetime | None = None
    rollback_tag: str | None = None
    commit_hash: str | None = None
    continue_message: str | None = None
    conflict_pr_url: str | None = None
    conflict_pr_number: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    attachments: list[Attachment] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None
