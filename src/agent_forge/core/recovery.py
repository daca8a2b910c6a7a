"""Startup sweep for agent processes that died with the previous server."""

import logging
import os
import sqlite3
from typing import Callable

from agent_forge.core import tasks as tasks_mod
from agent_forge.core.events import EventHub
from agent_forge.db.models import BLOCKED, PROCESS_ERROR, PROGRESS

logger = logging.getLogger(__name__)

RESTART_ERROR = "Server restarted - process was terminated"


def pid_alive(pid: int) -> bool:
    """Check if a process is still running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def recover_tasks(
    db: sqlite3.Connection,
    scheduler=None,
    hub: EventHub | None = None,
    is_alive: Callable[[int], bool] = pid_alive,
    include_unstarted: bool = True,
) -> list[str]:
    """Block tasks whose recorded agent process is gone, then advance the queue.

    Tasks whose process is still alive are left untouched. A task in progress
    with no recorded process is only blocked with ``include_unstarted``; a live
    server briefly holds such a task while it prepares the branch, so callers
    outside the server should leave it off. Returns the ids of the recovered
    tasks.
    """
    recovered = []
    for task in tasks_mod.list_tasks_with_process(db):
        if is_alive(task.process_pid):
            logger.info("Task %s still has live process %d", task.id, task.process_pid)
            continue

        logger.warning("Task %s lost its process %d; marking blocked", task.id, task.process_pid)
        with db.write_lock:
            tasks_mod.update_task_status(db, task.id, BLOCKED)
            tasks_mod.update_task_error(db, task.id, RESTART_ERROR)
            tasks_mod.update_task_process_info(db, task.id, 0, PROCESS_ERROR)
            tasks_mod.mark_task_finished(db, task.id)
        recovered.append(task.id)
        if hub:
            hub.broadcast_status(task.id, BLOCKED, task.current_iteration)
            hub.broadcast_task(tasks_mod.get_task(db, task.id))

    # A task left in progress without any process never got its agent started.
    if include_unstarted:
        for task in tasks_mod.list_tasks(db, status=PROGRESS):
            if task.process_pid or task.id in recovered:
                continue
            logger.warning("Task %s was in progress with no process; marking blocked", task.id)
            tasks_mod.block_task(db, task.id, RESTART_ERROR)
            recovered.append(task.id)
            if hub:
                hub.broadcast_task(tasks_mod.get_task(db, task.id))

    if scheduler is not None:
        scheduler.try_advance()
    return recovered
