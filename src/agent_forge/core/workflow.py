"""Branch workflow around a run: preparation, review, merge, conflicts, rollback."""

import logging
import os
import sqlite3

from agent_forge.config import Config
from agent_forge.core import tasks as tasks_mod
from agent_forge.core.briefs import build_conflict_brief
from agent_forge.core.events import EventHub
from agent_forge.core.projects import get_project, resolve_project_dir
from agent_forge.db.models import BACKLOG, BLOCKED, DONE, REVIEW, Task
from agent_forge.integrations import git as git_mod
from agent_forge.integrations import slack as slack_mod
from agent_forge.integrations.git import GitError, MergeConflict, MergeResult
from agent_forge.integrations.github import GitHubClient, GitHubError

logger = logging.getLogger(__name__)

ROLLBACK_STATUSES = (REVIEW, BLOCKED, DONE)


def _git_dir(db: sqlite3.Connection, task: Task) -> str | None:
    directory = resolve_project_dir(db, task)
    if not directory or not os.path.isdir(directory):
        return None
    if not git_mod.is_git_repository(directory):
        return None
    return directory


def _target_branch(db: sqlite3.Connection, task: Task, config: Config, directory: str) -> str:
    if task.target_branch:
        return task.target_branch
    project = get_project(db, task.project_id) if task.project_id else None
    preferred = project.default_branch if project else config.default_branch
    if git_mod.branch_exists(directory, preferred):
        return preferred
    return git_mod.get_default_branch(directory, preferred)


def _log(db: sqlite3.Connection, hub: EventHub | None, task_id: str, text: str):
    tasks_mod.append_task_logs(db, task_id, text)
    if hub:
        hub.broadcast_log(task_id, text)


def prepare_run(
    db: sqlite3.Connection,
    task: Task,
    config: Config,
    hub: EventHub | None = None,
) -> Task:
    """Put the repository on the task's working branch and tag the pre-run state.

    Directories that are not git repositories are left alone. Raises GitError
    when the branch cannot be checked out or created.
    """
    directory = _git_dir(db, task)
    if directory is None:
        return task

    project = get_project(db, task.project_id) if task.project_id else None
    remote = git_mod.has_remote(directory)

    if project and project.working_branch:
        working = target = project.working_branch
        if git_mod.branch_exists(directory, working):
            git_mod.ensure_on_branch(directory, working)
        else:
            git_mod.create_and_checkout_branch(directory, working)
        if remote:
            try:
                git_mod.pull_from_remote(directory, working)
            except GitError as e:
                logger.warning("Pull of %s failed: %s", working, e)
    else:
        target = _target_branch(db, task, config, directory)
        if remote and git_mod.branch_exists(directory, target):
            try:
                git_mod.ensure_on_branch(directory, target)
                git_mod.pull_from_remote(directory, target)
            except GitError as e:
                logger.warning("Pull of %s failed: %s", target, e)
        working = git_mod.create_working_branch(directory, task.id, task.title, base_branch=target)

    tasks_mod.update_task_branches(db, task.id, working_branch=working, target_branch=target)
    if hub:
        hub.broadcast_branch_change(task.id, working)

    if task.rollback_tag:
        try:
            git_mod.delete_tag(directory, task.rollback_tag)
        except GitError:
            logger.debug("Old rollback tag %s already gone", task.rollback_tag)
    tag = git_mod.create_rollback_tag(directory, task.id)
    tasks_mod.update_task_rollback_tag(db, task.id, tag)
    logger.info("Prepared task %s on %s (target %s, tag %s)", task.id, working, target, tag)
    return tasks_mod.get_task(db, task.id)


def complete_review(
    db: sqlite3.Connection,
    task_id: str,
    config: Config,
    hub: EventHub | None = None,
    github: GitHubClient | None = None,
) -> Task | None:
    """Post-success branch handling: merge or push, depending on config."""
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return None
    directory = _git_dir(db, task)
    if directory is None:
        return task

    working, target = task.working_branch, task.target_branch
    if config.auto_merge and working and target and working != target:
        try:
            merge_task(db, task_id, config, hub, github)
        except GitError as e:
            logger.warning("Auto-merge of task %s failed: %s", task_id, e)
        return tasks_mod.get_task(db, task_id)

    if config.auto_push and working and git_mod.has_remote(directory):
        try:
            git_mod.push_for_review(directory, working, task.title, task.id)
        except GitError as e:
            logger.warning("Push for review of task %s failed: %s", task_id, e)
            _log(db, hub, task_id, f"\n[FORGE WARNING] Push failed: {e}\n")
        else:
            _log(db, hub, task_id, f"\n[FORGE] Pushed {working} for review\n")
    return tasks_mod.get_task(db, task_id)


def _mark_merged(
    db: sqlite3.Connection,
    task: Task,
    directory: str,
    hub: EventHub | None,
    message: str,
) -> Task:
    try:
        tasks_mod.update_task_commit_hash(db, task.id, git_mod.get_current_commit_hash(directory))
    except GitError as e:
        logger.warning("Could not read merge commit for %s: %s", task.id, e)
    clear_rollback_tag(db, task, directory)
    tasks_mod.update_task_error(db, task.id, "")
    updated = tasks_mod.update_task_status(db, task.id, DONE)
    _log(db, hub, task.id, f"\n[FORGE] {message}\n")
    if hub:
        hub.broadcast_status(task.id, DONE, updated.current_iteration)
        hub.broadcast_task(updated)
    return updated


def commits_ahead(db: sqlite3.Connection, task: Task, config: Config) -> int | None:
    """Commits on the task's working branch that its target lacks, None when unknown."""
    if not task.working_branch:
        return None
    directory = _git_dir(db, task)
    if directory is None or not git_mod.branch_exists(directory, task.working_branch):
        return None
    target = _target_branch(db, task, config, directory)
    if target == task.working_branch:
        return 0
    try:
        return git_mod.get_commits_ahead(directory, target, task.working_branch)
    except GitError:
        return None


def clear_rollback_tag(db: sqlite3.Connection, task: Task, directory: str | None = None):
    """Delete the task's rollback tag (best effort) and forget it."""
    if not task.rollback_tag:
        return
    directory = directory or _git_dir(db, task)
    if directory:
        try:
            git_mod.delete_tag(directory, task.rollback_tag)
        except GitError as e:
            logger.debug("Rollback tag %s not deleted: %s", task.rollback_tag, e)
    tasks_mod.update_task_rollback_tag(db, task.id, None)


def merge_task(
    db: sqlite3.Connection,
    task_id: str,
    config: Config,
    hub: EventHub | None = None,
    github: GitHubClient | None = None,
) -> MergeResult:
    """Merge the task's working branch into its target, escalating conflicts."""
    task = tasks_mod.get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    directory = _git_dir(db, task)
    if directory is None:
        raise ValueError(f"Task {task_id} has no git working directory")

    working = task.working_branch
    target = _target_branch(db, task, config, directory)

    if not working or working == target:
        message = f"Nothing to merge: work was committed on {target}"
        _mark_merged(db, task, directory, hub, message)
        return MergeResult(success=True, message=message)

    if not git_mod.branch_exists(directory, working):
        message = f"Branch {working} no longer exists; treating as merged"
        _mark_merged(db, task, directory, hub, message)
        return MergeResult(success=True, message=message)

    try:
        result = git_mod.try_merge(directory, working, target, task.id, task.title)
    except GitError as e:
        tasks_mod.update_task_error(db, task_id, f"Merge failed: {e}")
        _log(db, hub, task_id, f"\n[FORGE ERROR] Merge failed: {e}\n")
        raise

    if result.success:
        _mark_merged(db, task, directory, hub, result.message)
    else:
        escalate_conflict(db, task, result.conflict, config, hub, github)
    return result


def _pr_body(task: Task, conflict: MergeConflict) -> str:
    parts = [
        "## Merge conflict",
        "",
        f"Automatic merge of `{conflict.source_branch}` into `{conflict.target_branch}` "
        "failed. Conflicting files:",
        "",
    ]
    parts += [f"- `{f}`" for f in conflict.files] or ["- (unknown)"]
    parts += ["", f"## Task: {task.title}", ""]
    if task.description:
        parts += ["### Description", "", task.description, ""]
    if task.acceptance_criteria:
        parts += ["### Acceptance Criteria", "", task.acceptance_criteria, ""]
    parts += ["---", f"*Opened by agent-forge for task `{task.id}`*"]
    return "\n".join(parts)


def escalate_conflict(
    db: sqlite3.Connection,
    task: Task,
    conflict: MergeConflict,
    config: Config,
    hub: EventHub | None = None,
    github: GitHubClient | None = None,
) -> str | None:
    """Open (or find) a pull request for a conflicting merge. Returns its URL."""
    files = ", ".join(conflict.files) or "unknown files"
    message = (
        f"Merge conflict merging {conflict.source_branch} into "
        f"{conflict.target_branch}: {files}"
    )
    _log(db, hub, task.id, f"\n[FORGE] {message}\n")

    pr_url = None
    directory = _git_dir(db, task)
    if github is None:
        tasks_mod.update_task_error(db, task.id, f"{message} (no GitHub token; resolve manually)")
    elif directory is None:
        tasks_mod.update_task_error(db, task.id, message)
    else:
        try:
            repo = git_mod.parse_github_repo(git_mod.get_remote_url(directory))
            try:
                git_mod.push_to_remote(directory, conflict.source_branch)
            except GitError as e:
                logger.warning("Push of %s before PR failed: %s", conflict.source_branch, e)
            pr = github.find_existing_pr(repo, conflict.source_branch, conflict.target_branch)
            if pr is None:
                pr = github.create_pull_request(
                    repo,
                    title=f"[Forge] {task.title}",
                    body=_pr_body(task, conflict),
                    head=conflict.source_branch,
                    base=conflict.target_branch,
                )
        except (GitError, GitHubError, ValueError) as e:
            logger.warning("Could not open conflict PR for %s: %s", task.id, e)
            tasks_mod.update_task_error(db, task.id, f"{message}. Could not open pull request: {e}")
        else:
            pr_url = pr.html_url
            tasks_mod.update_task_conflict_pr(db, task.id, pr.html_url, pr.number)
            tasks_mod.update_task_error(db, task.id, message)
            _log(db, hub, task.id, f"[FORGE] Conflict pull request: {pr.html_url}\n")

    if hub:
        hub.broadcast_merge_conflict(task.id, conflict.files, pr_url)
        hub.broadcast_task(tasks_mod.get_task(db, task.id))

    project = get_project(db, task.project_id) if task.project_id else None
    if project:
        slack_mod.notify(
            config.slack_bot_token,
            project.slack_channel,
            f"Merge conflict for {task.title}",
            slack_mod.format_conflict_pr(task, conflict.files, pr_url),
        )
    return pr_url


def rollback_task(db: sqlite3.Connection, task_id: str, hub: EventHub | None = None) -> Task:
    """Reset the repository to the task's rollback tag and return it to the backlog."""
    task = tasks_mod.get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.status not in ROLLBACK_STATUSES:
        raise ValueError(f"Cannot roll back a task in '{task.status}'")
    if not task.rollback_tag:
        raise ValueError(f"Task {task_id} has no rollback tag")
    directory = _git_dir(db, task)
    if directory is None:
        raise ValueError(f"Task {task_id} has no git working directory")

    branch = task.working_branch
    if not branch or not git_mod.branch_exists(directory, branch):
        branch = task.target_branch
    if branch:
        git_mod.ensure_on_branch(directory, branch)
    git_mod.rollback_to_tag(directory, task.rollback_tag)
    _log(db, hub, task_id, f"\n[FORGE] Rolled back to {task.rollback_tag}\n")
    clear_rollback_tag(db, task, directory)

    updated = tasks_mod.update_task_status(db, task_id, BACKLOG)
    if hub:
        hub.broadcast_status(task_id, BACKLOG, 0)
        hub.broadcast_task(updated)
    logger.info("Rolled back task %s on %s", task_id, branch)
    return updated


def resolve_conflict(db: sqlite3.Connection, task_id: str, supervisor, files: list[str] | None = None) -> Task:
    """Re-run the agent on the task's branch with conflict-resolution instructions."""
    task = tasks_mod.get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if not task.working_branch:
        raise ValueError(f"Task {task_id} has no working branch")
    directory = _git_dir(db, task)
    if directory is None:
        raise ValueError(f"Task {task_id} has no git working directory")

    target = _target_branch(db, task, supervisor.config, directory)
    if git_mod.branch_exists(directory, task.working_branch):
        git_mod.ensure_on_branch(directory, task.working_branch)
    brief = build_conflict_brief(task, target, files or [])
    return supervisor.continue_task(task_id, brief)
