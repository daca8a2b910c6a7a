"""JSON-ready dictionaries for store records."""

from datetime import datetime

from agent_forge.db.models import Attachment, BranchRule, Project, Task, TaskEvent


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def project_dict(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "repo_path": p.repo_path,
        "default_branch": p.default_branch,
        "working_branch": p.working_branch,
        "slack_channel": p.slack_channel,
        "created_at": _iso(p.created_at),
    }


def rule_dict(r: BranchRule) -> dict:
    return {"id": r.id, "project_id": r.project_id, "pattern": r.pattern}


def attachment_dict(a: Attachment) -> dict:
    return {
        "id": a.id,
        "filename": a.filename,
        "mime_type": a.mime_type,
        "path": a.path,
    }


def task_dict(t: Task, include_logs: bool = True) -> dict:
    data = {
        "id": t.id,
        "title": t.title,
        "project_id": t.project_id,
        "description": t.description,
        "acceptance_criteria": t.acceptance_criteria,
        "status": t.status,
        "priority": t.priority,
        "current_iteration": t.current_iteration,
        "max_iterations": t.max_iterations,
        "error": t.error,
        "project_dir": t.project_dir,
        "working_branch": t.working_branch,
        "target_branch": t.target_branch,
        "queue_position": t.queue_position,
        "process_pid": t.process_pid,
        "process_status": t.process_status,
        "started_at": _iso(t.started_at),
        "finished_at": _iso(t.finished_at),
        "rollback_tag": t.rollback_tag,
        "commit_hash": t.commit_hash,
        "continue_message": t.continue_message,
        "conflict_pr_url": t.conflict_pr_url,
        "conflict_pr_number": t.conflict_pr_number,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
        "attachments": [attachment_dict(a) for a in t.attachments],
    }
    if include_logs:
        data["logs"] = t.logs
    return data


def event_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }
