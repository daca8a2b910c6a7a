"""MCP server exposing the agent forge board and queue."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import Context, FastMCP

from agent_forge.core import projects as projects_mod
from agent_forge.core import tasks as tasks_mod
from agent_forge.core import workflow
from agent_forge.core.queue import QueueError
from agent_forge.core.runtime import Runtime, build_runtime
from agent_forge.core.serialize import project_dict, task_dict
from agent_forge.core.supervisor import AgentError
from agent_forge.integrations.git import GitError


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[Runtime]:
    """Build the runtime and start the queue worker; stop agents on shutdown."""
    runtime = build_runtime()
    runtime.start()
    try:
        yield runtime
    finally:
        runtime.close()


mcp = FastMCP("agent-forge", lifespan=app_lifespan)


def _rt(ctx: Context) -> Runtime:
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    acceptance_criteria: str = "",
    priority: int = 2,
    max_iterations: int | None = None,
) -> dict:
    """Create a task in the backlog. Lower priority numbers run first on the board."""
    rt = _rt(ctx)
    if project == "default":
        projects_mod.ensure_default_project(rt.db, str(rt.config.repo_path))
    elif not projects_mod.get_project(rt.db, project):
        return {"error": f"Project not found: {project}"}
    task = tasks_mod.create_task(
        rt.db,
        title,
        project,
        description=description,
        acceptance_criteria=acceptance_criteria,
        priority=priority,
        max_iterations=max_iterations or rt.config.default_max_iterations,
    )
    rt.hub.broadcast_task(task)
    return task_dict(task, include_logs=False)


@mcp.tool()
def list_tasks(ctx: Context, project: str | None = None, status: str | None = None) -> list[dict]:
    """List tasks, optionally filtered by project and status."""
    rt = _rt(ctx)
    return [task_dict(t, include_logs=False) for t in tasks_mod.list_tasks(rt.db, project, status=status)]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task including its captured agent output (last 10000 characters)."""
    rt = _rt(ctx)
    task = tasks_mod.get_task(rt.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = task_dict(task)
    if len(task.logs) > 10000:
        result["logs"] = task.logs[-10000:]
        result["logs_truncated"] = True
    result["running"] = rt.supervisor.is_running(task_id)
    return result


@mcp.tool()
def move_task(ctx: Context, task_id: str, status: str) -> dict:
    """Move a task on the board: backlog, queued, progress, review, done, blocked."""
    rt = _rt(ctx)
    try:
        return task_dict(rt.scheduler.move(task_id, status), include_logs=False)
    except (ValueError, QueueError, AgentError) as e:
        return {"error": str(e)}


# ── Queue Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def queue_task(ctx: Context, task_id: str, message: str | None = None) -> dict:
    """Append a task to the run queue. The agent starts it when the lane is free."""
    rt = _rt(ctx)
    try:
        return task_dict(rt.scheduler.enqueue(task_id, message), include_logs=False)
    except (ValueError, QueueError) as e:
        return {"error": str(e)}


@mcp.tool()
def dequeue_task(ctx: Context, task_id: str) -> dict:
    """Take a task off the run queue and return it to the backlog."""
    rt = _rt(ctx)
    try:
        return task_dict(rt.scheduler.remove(task_id), include_logs=False)
    except ValueError as e:
        return {"error": str(e)}


@mcp.tool()
def list_queue(ctx: Context) -> list[dict]:
    """List queued tasks in run order."""
    rt = _rt(ctx)
    return [task_dict(t, include_logs=False) for t in rt.scheduler.list_queued()]


# ── Agent Tools ───────────────────────────────────────────────────────────────


@mcp.tool()
def stop_agent(ctx: Context, task_id: str) -> dict:
    """Terminate the agent working on a task."""
    rt = _rt(ctx)
    return {"task_id": task_id, "stopped": rt.supervisor.stop(task_id)}


@mcp.tool()
def continue_task(ctx: Context, task_id: str, feedback: str = "") -> dict:
    """Restart the agent on a task with reviewer feedback."""
    rt = _rt(ctx)
    try:
        return task_dict(rt.supervisor.continue_task(task_id, feedback), include_logs=False)
    except (ValueError, AgentError) as e:
        return {"error": str(e)}


# ── Branch Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def merge_task(ctx: Context, task_id: str) -> dict:
    """Merge a reviewed task's branch. Conflicts open a pull request instead."""
    rt = _rt(ctx)
    try:
        result = workflow.merge_task(rt.db, task_id, rt.config, rt.hub, rt.github)
    except (ValueError, GitError) as e:
        return {"error": str(e)}
    payload = {"success": result.success, "message": result.message}
    if result.conflict:
        task = tasks_mod.get_task(rt.db, task_id)
        payload["conflict_files"] = result.conflict.files
        payload["pr_url"] = task.conflict_pr_url
    return payload


@mcp.tool()
def rollback_task(ctx: Context, task_id: str) -> dict:
    """Hard-reset the repository to the state before the task ran."""
    rt = _rt(ctx)
    try:
        return task_dict(workflow.rollback_task(rt.db, task_id, rt.hub), include_logs=False)
    except (ValueError, GitError) as e:
        return {"error": str(e)}


@mcp.tool()
def list_projects(ctx: Context) -> list[dict]:
    """List projects with their protected branch patterns."""
    rt = _rt(ctx)
    result = []
    for p in projects_mod.list_projects(rt.db):
        data = project_dict(p)
        data["protected"] = projects_mod.protected_patterns(rt.db, p.id)
        result.append(data)
    return result


@mcp.tool()
def protect_branch(ctx: Context, project: str, pattern: str) -> dict:
    """Forbid the agent from committing to branches matching a pattern."""
    rt = _rt(ctx)
    try:
        rule = projects_mod.add_branch_rule(rt.db, project, pattern)
    except ValueError as e:
        return {"error": str(e)}
    return {"project": project, "pattern": rule.pattern}
