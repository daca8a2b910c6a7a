"""CLI entry point for agent forge."""

import json
import logging
import mimetypes
import os
import sys

import click
import httpx

from agent_forge.config import get_config
from agent_forge.core import projects as projects_mod
from agent_forge.core import tasks as tasks_mod
from agent_forge.core import workflow
from agent_forge.core.events import EventHub
from agent_forge.core.recovery import recover_tasks
from agent_forge.core.serialize import task_dict
from agent_forge.db.engine import get_db
from agent_forge.db.models import TASK_STATUSES
from agent_forge.integrations.git import GitError
from agent_forge.integrations.github import GitHubClient


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _server_call(method: str, path: str, payload: dict | None = None) -> dict:
    """Send a request to the running forge server, exiting on any failure."""
    config = get_config()
    url = f"{config.server_url}{path}"
    try:
        resp = httpx.request(method, url, json=payload, timeout=30.0)
    except httpx.HTTPError as e:
        _fail(f"Cannot reach forge server at {config.server_url}: {e}")
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if resp.status_code >= 400:
        _fail(body.get("error") if isinstance(body, dict) and body.get("error") else resp.text)
    return body


@click.group()
def main():
    """forge - queue coding tasks for an autonomous agent"""
    pass


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default target branch")
@click.option("--slack-channel", default=None, help="Slack channel for notifications")
def init_project(project_name, repo_path, branch, slack_channel):
    """Register a project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            _fail(f"Project already exists: {project_id}")
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch, slack_channel
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.repo_path}")
        click.echo(f"  Branch: {project.default_branch}")


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
def project_list():
    """List registered projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            mode = f" [trunk: {p.working_branch}]" if p.working_branch else ""
            click.echo(f"  {p.id}: {p.name} ({p.repo_path}, {p.default_branch}){mode}")


@project_group.command("working-branch")
@click.argument("project_id")
@click.argument("branch", required=False)
@click.option("--clear", is_flag=True, help="Return to branch-per-task mode")
def project_working_branch(project_id, branch, clear):
    """Show or set the branch all of a project's tasks commit to."""
    with _get_db() as db:
        project = projects_mod.get_project(db, project_id)
        if not project:
            _fail(f"Project not found: {project_id}")
        if clear:
            projects_mod.set_working_branch(db, project_id, None)
            click.echo(f"{project_id}: branch-per-task mode")
        elif branch:
            projects_mod.set_working_branch(db, project_id, branch)
            click.echo(f"{project_id}: tasks commit to {branch}")
        elif project.working_branch:
            click.echo(project.working_branch)
        else:
            click.echo("(branch-per-task)")


# ── Branch Rules ──────────────────────────────────────────────────────────────


@main.group("branch")
def branch_group():
    """Manage protected branch rules."""
    pass


@branch_group.command("protect")
@click.argument("project_id")
@click.argument("pattern")
@click.option("--remove", is_flag=True, help="Remove the rule instead")
def branch_protect(project_id, pattern, remove):
    """Protect branches matching PATTERN (exact name or a single '*')."""
    with _get_db() as db:
        if remove:
            if not projects_mod.remove_branch_rule(db, project_id, pattern):
                _fail(f"No rule {pattern} for project {project_id}")
            click.echo(f"Removed rule: {pattern}")
            return
        try:
            rule = projects_mod.add_branch_rule(db, project_id, pattern)
        except ValueError as e:
            _fail(str(e))
        click.echo(f"Protected: {rule.pattern}")


@branch_group.command("rules")
@click.argument("project_id")
def branch_rules(project_id):
    """List protected branch rules."""
    with _get_db() as db:
        rules = projects_mod.list_branch_rules(db, project_id)
        if not rules:
            click.echo("No protected branches.")
            return
        for r in rules:
            click.echo(f"  {r.pattern}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--criteria", "-c", default="", help="Acceptance criteria")
@click.option("--priority", "-p", default=2, type=int, help="Priority (lower is more urgent)")
@click.option("--max-iterations", "-m", default=None, type=int, help="Iteration limit")
@click.option("--dir", "project_dir", default="", help="Working directory override")
@click.option("--target", default=None, help="Branch to merge into")
def task_add(title, project, description, criteria, priority, max_iterations, project_dir, target):
    """Create a new task in the backlog."""
    config = get_config()
    with _get_db() as db:
        if project == "default":
            projects_mod.ensure_default_project(db, str(config.repo_path))
        elif not projects_mod.get_project(db, project):
            _fail(f"Project not found: {project}")
        task = tasks_mod.create_task(
            db,
            title,
            project,
            description=description,
            acceptance_criteria=criteria,
            priority=priority,
            max_iterations=max_iterations or config.default_max_iterations,
            project_dir=os.path.abspath(project_dir) if project_dir else "",
            target_branch=target,
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--project", default=None, help="Project ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([task_dict(t, include_logs=False) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "backlog": "○",
            "queued": "…",
            "progress": "●",
            "review": "◐",
            "done": "✓",
            "blocked": "✗",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            pos = f" #{task.queue_position}" if task.queue_position else ""
            branch = f" [{task.working_branch}]" if task.working_branch else ""
            click.echo(f"  {icon} {task.id[:8]}{pos}: {task.title} ({task.status}){branch}")


@task_group.command("show")
@click.argument("task_id")
@click.option("--logs", is_flag=True, help="Print the captured agent output")
def task_show(task_id, logs):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Iteration: {task.current_iteration}/{task.max_iterations}")
        if task.queue_position:
            click.echo(f"  Queue position: {task.queue_position}")
        if task.working_branch:
            ahead = workflow.commits_ahead(db, task, get_config())
            suffix = f" ({ahead} commit(s) ahead)" if ahead else ""
            click.echo(f"  Branch: {task.working_branch} -> {task.target_branch}{suffix}")
        if task.rollback_tag:
            click.echo(f"  Rollback tag: {task.rollback_tag}")
        if task.conflict_pr_url:
            click.echo(f"  Conflict PR: {task.conflict_pr_url}")
        if task.error:
            click.echo(f"  Error: {task.error}")
        for att in task.attachments:
            click.echo(f"  Attachment: {att.filename} ({att.path})")

        events = tasks_mod.get_task_events(db, task.id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")
        if logs and task.logs:
            click.echo("")
            click.echo(task.logs)


@task_group.command("attach")
@click.argument("task_id")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def task_attach(task_id, path):
    """Attach a file (screenshot, video, ...) to a task's brief."""
    path = os.path.abspath(path)
    mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    with _get_db() as db:
        if not tasks_mod.get_task(db, task_id):
            _fail(f"Task not found: {task_id}")
        att = projects_mod.add_attachment(db, task_id, os.path.basename(path), path, mime_type)
        click.echo(f"Attached {att.filename} ({att.mime_type})")


@task_group.command("queue")
@click.argument("task_id")
@click.option("--message", default=None, help="Feedback to send when the task starts")
def task_queue(task_id, message):
    """Add a task to the end of the run queue."""
    data = _server_call("POST", f"/api/tasks/{task_id}/queue", {"continue_message": message})
    click.echo(f"Queued {data['id']} at position {data['queue_position']}")


@task_group.command("dequeue")
@click.argument("task_id")
def task_dequeue(task_id):
    """Remove a task from the run queue."""
    data = _server_call("DELETE", f"/api/tasks/{task_id}/queue")
    click.echo(f"{data['id']} is now {data['status']}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
def task_move(task_id, status):
    """Move a task to another column of the board."""
    data = _server_call("POST", f"/api/tasks/{task_id}/move", {"status": status})
    click.echo(f"{data['id']} is now {data['status']}")


# ── Agent Commands ───────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Control the running agent (requires `forge serve`)."""
    pass


@agent_group.command("pause")
@click.argument("task_id")
def agent_pause(task_id):
    """Suspend the task's agent process."""
    _server_call("POST", f"/api/tasks/{task_id}/pause")
    click.echo(f"Paused {task_id}")


@agent_group.command("resume")
@click.argument("task_id")
def agent_resume(task_id):
    """Resume a paused agent process."""
    _server_call("POST", f"/api/tasks/{task_id}/resume")
    click.echo(f"Resumed {task_id}")


@agent_group.command("stop")
@click.argument("task_id")
def agent_stop(task_id):
    """Terminate the task's agent process."""
    data = _server_call("POST", f"/api/tasks/{task_id}/stop")
    click.echo(f"Stopped {task_id}" if data.get("stopped") else f"No agent running for {task_id}")


@agent_group.command("continue")
@click.argument("task_id")
@click.argument("feedback", required=False, default="")
def agent_continue(task_id, feedback):
    """Restart the agent with a continuation brief and optional feedback."""
    data = _server_call("POST", f"/api/tasks/{task_id}/continue", {"feedback": feedback})
    click.echo(f"Continuing {data['id']} ({data['status']})")


# ── Branch Workflow ──────────────────────────────────────────────────────────


@main.command("merge")
@click.argument("task_id")
def merge_command(task_id):
    """Merge a task's working branch into its target branch."""
    config = get_config()
    github = GitHubClient(config.github_token) if config.github_token else None
    with _get_db() as db:
        try:
            result = workflow.merge_task(db, task_id, config, EventHub(), github)
        except (ValueError, GitError) as e:
            _fail(str(e))
        finally:
            if github:
                github.close()
        if result.success:
            click.echo(result.message)
            return
        task = tasks_mod.get_task(db, task_id)
        click.echo(f"Merge conflict in {len(result.conflict.files)} file(s):", err=True)
        for f in result.conflict.files:
            click.echo(f"  {f}", err=True)
        if task.conflict_pr_url:
            click.echo(f"Conflict PR: {task.conflict_pr_url}", err=True)
        sys.exit(1)


@main.command("rollback")
@click.argument("task_id")
def rollback_command(task_id):
    """Reset the repository to the task's rollback tag."""
    with _get_db() as db:
        try:
            task = workflow.rollback_task(db, task_id)
        except (ValueError, GitError) as e:
            _fail(str(e))
        click.echo(f"Rolled back {task.id}; task returned to {task.status}")


@main.command("recover")
@click.option(
    "--include-unstarted",
    is_flag=True,
    help="Also block in-progress tasks that never got a process. Only when no server is running.",
)
def recover_command(include_unstarted):
    """Block tasks whose agent process died with a previous server."""
    with _get_db() as db:
        recovered = recover_tasks(db, include_unstarted=include_unstarted)
        if not recovered:
            click.echo("Nothing to recover.")
            return
        for task_id in recovered:
            click.echo(f"  Blocked {task_id}")


# ── Server Commands ──────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the API server, queue worker and agent supervisor."""
    from agent_forge.web.app import run_server

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"Starting forge server at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_forge.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
