"""HTTP and WebSocket API for the agent forge."""

import contextlib
import functools
import logging
import queue

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from agent_forge.core import projects as projects_mod
from agent_forge.core import tasks as tasks_mod
from agent_forge.core import workflow
from agent_forge.core.queue import QueueError
from agent_forge.core.runtime import Runtime, build_runtime
from agent_forge.core.serialize import (
    attachment_dict,
    event_dict,
    project_dict,
    rule_dict,
    task_dict,
)
from agent_forge.core.supervisor import (
    ActiveTaskConflict,
    AgentAlreadyRunning,
    AgentError,
    ProcessNotRunning,
)
from agent_forge.integrations.git import GitError, get_git_info

logger = logging.getLogger(__name__)


def _runtime(request) -> Runtime:
    return request.app.state.runtime


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def api_errors(handler):
    """Map domain exceptions raised by a handler onto JSON error responses."""

    @functools.wraps(handler)
    async def wrapper(request: Request):
        try:
            return await handler(request)
        except (QueueError, ActiveTaskConflict, AgentAlreadyRunning) as e:
            return _error(str(e), 409)
        except ProcessNotRunning as e:
            return _error(str(e), 404)
        except (AgentError, GitError) as e:
            return _error(str(e), 400)
        except ValueError as e:
            status = 404 if "not found" in str(e).lower() else 400
            return _error(str(e), status)

    return wrapper


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _require_task(rt: Runtime, task_id: str):
    task = tasks_mod.get_task(rt.db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    return task


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    rt = _runtime(request)
    tasks = tasks_mod.list_tasks(
        rt.db,
        request.query_params.get("project"),
        status=request.query_params.get("status"),
    )
    return JSONResponse([task_dict(t, include_logs=False) for t in tasks])


@api_errors
async def api_create_task(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    title = (body.get("title") or "").strip()
    if not title:
        return _error("title is required", 400)
    project_id = body.get("project_id")
    if project_id and not projects_mod.get_project(rt.db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    task = tasks_mod.create_task(
        rt.db,
        title,
        project_id,
        description=body.get("description", ""),
        acceptance_criteria=body.get("acceptance_criteria", ""),
        priority=int(body.get("priority", 2)),
        max_iterations=int(body.get("max_iterations", rt.config.default_max_iterations)),
        project_dir=body.get("project_dir", ""),
        target_branch=body.get("target_branch"),
    )
    rt.hub.broadcast_task(task)
    return JSONResponse(task_dict(task), status_code=201)


@api_errors
async def api_get_task(request: Request):
    rt = _runtime(request)
    task = _require_task(rt, request.path_params["task_id"])
    td = task_dict(task)
    td["running"] = rt.supervisor.is_running(task.id)
    td["commits_ahead"] = await run_in_threadpool(workflow.commits_ahead, rt.db, task, rt.config)
    td["events"] = [event_dict(e) for e in tasks_mod.get_task_events(rt.db, task.id)]
    return JSONResponse(td)


@api_errors
async def api_update_task(request: Request):
    rt = _runtime(request)
    task = _require_task(rt, request.path_params["task_id"])
    body = await _json_body(request)
    task = tasks_mod.update_task_fields(rt.db, task.id, **body)
    rt.hub.broadcast_task(task)
    return JSONResponse(task_dict(task))


@api_errors
async def api_delete_task(request: Request):
    rt = _runtime(request)
    task = _require_task(rt, request.path_params["task_id"])
    if rt.supervisor.is_running(task.id):
        rt.supervisor.stop(task.id)
    rt.scheduler.remove(task.id)
    tasks_mod.delete_task(rt.db, task.id)
    rt.hub.publish({"type": "task_deleted", "task_id": task.id})
    return JSONResponse({"deleted": task.id})


@api_errors
async def api_move_task(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    status = body.get("status")
    if not status:
        return _error("status is required", 400)
    task = await run_in_threadpool(rt.scheduler.move, request.path_params["task_id"], status)
    return JSONResponse(task_dict(task))


# ── Queue ─────────────────────────────────────────────────────────────────────


async def api_list_queue(request: Request):
    rt = _runtime(request)
    return JSONResponse([task_dict(t, include_logs=False) for t in rt.scheduler.list_queued()])


@api_errors
async def api_enqueue(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    task = rt.scheduler.enqueue(request.path_params["task_id"], body.get("continue_message"))
    return JSONResponse(task_dict(task))


@api_errors
async def api_dequeue(request: Request):
    rt = _runtime(request)
    task = rt.scheduler.remove(request.path_params["task_id"])
    return JSONResponse(task_dict(task))


# ── Agent control ─────────────────────────────────────────────────────────────


@api_errors
async def api_pause(request: Request):
    rt = _runtime(request)
    rt.supervisor.pause(request.path_params["task_id"])
    return JSONResponse({"paused": True})


@api_errors
async def api_resume(request: Request):
    rt = _runtime(request)
    rt.supervisor.resume(request.path_params["task_id"])
    return JSONResponse({"paused": False})


@api_errors
async def api_stop(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    _require_task(rt, task_id)
    return JSONResponse({"stopped": rt.supervisor.stop(task_id)})


@api_errors
async def api_continue(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    task = await run_in_threadpool(
        rt.supervisor.continue_task,
        request.path_params["task_id"],
        body.get("feedback") or body.get("message") or "",
    )
    return JSONResponse(task_dict(task))


@api_errors
async def api_input(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    rt.supervisor.send_input(request.path_params["task_id"], body.get("text", ""))
    return JSONResponse({"sent": True})


@api_errors
async def api_rollback(request: Request):
    rt = _runtime(request)
    task = await run_in_threadpool(
        workflow.rollback_task, rt.db, request.path_params["task_id"], rt.hub
    )
    return JSONResponse(task_dict(task))


@api_errors
async def api_merge(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    result = await run_in_threadpool(
        workflow.merge_task, rt.db, task_id, rt.config, rt.hub, rt.github
    )
    task = tasks_mod.get_task(rt.db, task_id)
    payload = {"success": result.success, "message": result.message, "task": task_dict(task)}
    if result.conflict:
        payload["conflict"] = {
            "files": result.conflict.files,
            "source_branch": result.conflict.source_branch,
            "target_branch": result.conflict.target_branch,
            "pr_url": task.conflict_pr_url,
        }
    return JSONResponse(payload)


@api_errors
async def api_resolve_conflict(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    task = await run_in_threadpool(
        workflow.resolve_conflict,
        rt.db,
        request.path_params["task_id"],
        rt.supervisor,
        body.get("files"),
    )
    return JSONResponse(task_dict(task))


@api_errors
async def api_add_attachment(request: Request):
    rt = _runtime(request)
    task = _require_task(rt, request.path_params["task_id"])
    body = await _json_body(request)
    if not body.get("path"):
        return _error("path is required", 400)
    att = projects_mod.add_attachment(
        rt.db,
        task.id,
        body.get("filename") or body["path"].rsplit("/", 1)[-1],
        body["path"],
        body.get("mime_type", "application/octet-stream"),
    )
    return JSONResponse(attachment_dict(att), status_code=201)


# ── Projects ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    rt = _runtime(request)
    return JSONResponse([project_dict(p) for p in projects_mod.list_projects(rt.db)])


@api_errors
async def api_create_project(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    if not body.get("id") or not body.get("repo_path"):
        return _error("id and repo_path are required", 400)
    if projects_mod.get_project(rt.db, body["id"]):
        return _error(f"Project already exists: {body['id']}", 409)
    project = projects_mod.create_project(
        rt.db,
        body["id"],
        body.get("name") or body["id"],
        body["repo_path"],
        body.get("default_branch", rt.config.default_branch),
        body.get("slack_channel"),
        body.get("working_branch"),
    )
    return JSONResponse(project_dict(project), status_code=201)


@api_errors
async def api_get_project(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]
    project = projects_mod.get_project(rt.db, project_id)
    if not project:
        raise ValueError(f"Project not found: {project_id}")
    data = project_dict(project)
    data["branch_rules"] = [rule_dict(r) for r in projects_mod.list_branch_rules(rt.db, project_id)]
    return JSONResponse(data)


@api_errors
async def api_update_project(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]
    if not projects_mod.get_project(rt.db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    body = await _json_body(request)
    project = projects_mod.update_project(rt.db, project_id, **body)
    return JSONResponse(project_dict(project))


@api_errors
async def api_set_working_branch(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]
    if not projects_mod.get_project(rt.db, project_id):
        raise ValueError(f"Project not found: {project_id}")
    body = await _json_body(request)
    project = projects_mod.set_working_branch(rt.db, project_id, body.get("branch") or None)
    return JSONResponse(project_dict(project))


@api_errors
async def api_branch_rules(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]
    if request.method == "POST":
        body = await _json_body(request)
        if not body.get("pattern"):
            return _error("pattern is required", 400)
        rule = projects_mod.add_branch_rule(rt.db, project_id, body["pattern"])
        return JSONResponse(rule_dict(rule), status_code=201)
    return JSONResponse([rule_dict(r) for r in projects_mod.list_branch_rules(rt.db, project_id)])


@api_errors
async def api_delete_branch_rule(request: Request):
    rt = _runtime(request)
    removed = projects_mod.remove_branch_rule(
        rt.db, request.path_params["project_id"], request.path_params["pattern"]
    )
    if not removed:
        return _error("Branch rule not found", 404)
    return JSONResponse({"deleted": request.path_params["pattern"]})


@api_errors
async def api_project_git(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]
    project = projects_mod.get_project(rt.db, project_id)
    if not project:
        raise ValueError(f"Project not found: {project_id}")
    return JSONResponse(await run_in_threadpool(get_git_info, project.repo_path))


# ── Events ────────────────────────────────────────────────────────────────────


async def ws_events(websocket: WebSocket):
    hub = websocket.app.state.runtime.hub
    await websocket.accept()
    q = hub.subscribe()
    try:
        await websocket.send_json({"type": "hello"})
        while True:
            try:
                message = await run_in_threadpool(q.get, True, 1.0)
            except queue.Empty:
                continue
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(q)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(runtime: Runtime | None = None, start_worker: bool = True) -> Starlette:
    runtime = runtime or build_runtime()

    @contextlib.asynccontextmanager
    async def lifespan(app):
        if start_worker:
            runtime.start()
        try:
            yield
        finally:
            if start_worker:
                runtime.shutdown()

    routes = [
        Route("/api/tasks", api_list_tasks, methods=["GET"]),
        Route("/api/tasks", api_create_task, methods=["POST"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_update_task, methods=["PATCH", "PUT"]),
        Route("/api/tasks/{task_id}", api_delete_task, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/move", api_move_task, methods=["POST"]),
        Route("/api/tasks/{task_id}/queue", api_enqueue, methods=["POST"]),
        Route("/api/tasks/{task_id}/queue", api_dequeue, methods=["DELETE"]),
        Route("/api/tasks/{task_id}/pause", api_pause, methods=["POST"]),
        Route("/api/tasks/{task_id}/resume", api_resume, methods=["POST"]),
        Route("/api/tasks/{task_id}/stop", api_stop, methods=["POST"]),
        Route("/api/tasks/{task_id}/feedback", api_continue, methods=["POST"]),
        Route("/api/tasks/{task_id}/continue", api_continue, methods=["POST"]),
        Route("/api/tasks/{task_id}/input", api_input, methods=["POST"]),
        Route("/api/tasks/{task_id}/rollback", api_rollback, methods=["POST"]),
        Route("/api/tasks/{task_id}/merge", api_merge, methods=["POST"]),
        Route("/api/tasks/{task_id}/resolve-conflict", api_resolve_conflict, methods=["POST"]),
        Route("/api/tasks/{task_id}/attachments", api_add_attachment, methods=["POST"]),
        Route("/api/queue", api_list_queue, methods=["GET"]),
        Route("/api/projects", api_list_projects, methods=["GET"]),
        Route("/api/projects", api_create_project, methods=["POST"]),
        Route("/api/projects/{project_id}", api_get_project, methods=["GET"]),
        Route("/api/projects/{project_id}", api_update_project, methods=["PATCH"]),
        Route("/api/projects/{project_id}/working-branch", api_set_working_branch, methods=["PUT"]),
        Route("/api/projects/{project_id}/branch-rules", api_branch_rules, methods=["GET", "POST"]),
        Route(
            "/api/projects/{project_id}/branch-rules/{pattern:path}",
            api_delete_branch_rule,
            methods=["DELETE"],
        ),
        Route("/api/projects/{project_id}/git", api_project_git, methods=["GET"]),
        WebSocketRoute("/ws", ws_events),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = runtime
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
