"""Single-lane task queue and advancement worker."""

import logging
import os
import queue
import sqlite3
import threading
import time

from agent_forge.config import Config
from agent_forge.core import tasks as tasks_mod
from agent_forge.core.events import EventHub
from agent_forge.core.projects import resolve_project_dir
from agent_forge.core.supervisor import (
    ActiveTaskConflict,
    AgentError,
    AgentStartError,
    AgentSupervisor,
)
from agent_forge.core.tasks import remove_from_queue
from agent_forge.core.workflow import clear_rollback_tag, prepare_run
from agent_forge.db.engine import locked
from agent_forge.db.models import BACKLOG, DONE, PROGRESS, QUEUED, TASK_STATUSES, Task
from agent_forge.integrations.git import GitError

logger = logging.getLogger(__name__)


class QueueError(Exception):
    """Raised for invalid queue operations."""


# ── Store queries ───────────────────────────────────────────────────────────


@locked
def max_queue_position(db: sqlite3.Connection) -> int:
    row = db.execute(
        "SELECT COALESCE(MAX(queue_position), 0) AS pos FROM tasks WHERE status = ?",
        (QUEUED,),
    ).fetchone()
    return row["pos"]


@locked
def next_queued_task(db: sqlite3.Connection) -> Task | None:
    row = db.execute(
        """SELECT id FROM tasks WHERE status = ? AND queue_position > 0
           ORDER BY queue_position ASC LIMIT 1""",
        (QUEUED,),
    ).fetchone()
    if not row:
        return None
    return tasks_mod.get_task(db, row["id"])


@locked
def list_queue(db: sqlite3.Connection) -> list[Task]:
    rows = db.execute(
        "SELECT id FROM tasks WHERE status = ? ORDER BY queue_position ASC",
        (QUEUED,),
    ).fetchall()
    return [tasks_mod.get_task(db, r["id"]) for r in rows]


@locked
def add_to_queue(db: sqlite3.Connection, task_id: str, front: bool = False) -> int:
    """Append a task to the queue, or put it at the head with ``front``, and mark it queued."""
    if front:
        db.execute(
            "UPDATE tasks SET queue_position = queue_position + 1 WHERE status = ? AND queue_position > 0",
            (QUEUED,),
        )
        position = 1
    else:
        position = max_queue_position(db) + 1
    db.execute(
        "UPDATE tasks SET queue_position = ?, updated_at = datetime('now') WHERE id = ?",
        (position, task_id),
    )
    tasks_mod.update_task_status(db, task_id, QUEUED)
    tasks_mod._log_event(db, task_id, "queued", None, str(position))
    db.commit()
    return position


# ── Scheduler ───────────────────────────────────────────────────────────────


class QueueScheduler:
    """Orders pending tasks and hands them one at a time to the supervisor.

    Completion notices from the supervisor go onto a channel drained by a
    single worker thread, which calls ``try_advance`` once per notice.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        supervisor: AgentSupervisor,
        config: Config,
        hub: EventHub | None = None,
    ):
        self.db = db
        self.supervisor = supervisor
        self.config = config
        self.hub = hub or supervisor.hub
        self._advance_lock = threading.Lock()
        self._channel: queue.Queue = queue.Queue()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Queue operations ────────────────────────────────────────────────────

    def enqueue(self, task_id: str, continue_message: str | None = None) -> Task:
        with self.db.write_lock:
            task = tasks_mod.get_task(self.db, task_id)
            if not task:
                raise ValueError(f"Task not found: {task_id}")
            if task.status == QUEUED:
                return task
            if task.status == PROGRESS or self.supervisor.is_running(task_id):
                raise QueueError(f"Task {task_id} is in progress and cannot be queued")
            if continue_message:
                tasks_mod.set_continue_message(self.db, task_id, continue_message)
            position = add_to_queue(self.db, task_id)
            task = tasks_mod.get_task(self.db, task_id)
        logger.info("Queued task %s at position %d", task_id, position)
        self.hub.broadcast_task(task)
        self.request_advance()
        return task

    def dequeue_next(self) -> Task | None:
        return next_queued_task(self.db)

    def remove(self, task_id: str) -> Task:
        with self.db.write_lock:
            task = tasks_mod.get_task(self.db, task_id)
            if not task:
                raise ValueError(f"Task not found: {task_id}")
            if task.status != QUEUED:
                return task
            remove_from_queue(self.db, task_id)
            task = tasks_mod.update_task_status(self.db, task_id, BACKLOG)
        self.hub.broadcast_task(task)
        return task

    def list_queued(self) -> list[Task]:
        return list_queue(self.db)

    # ── Advancement ─────────────────────────────────────────────────────────

    def try_advance(self) -> Task | None:
        """Start the next queued task if the execution slot is free."""
        with self._advance_lock:
            try:
                if self._slot_taken():
                    return None
                attempts = max(1, len(list_queue(self.db)))
            except Exception:
                logger.exception("Could not inspect queue state")
                return None

            for _ in range(attempts):
                try:
                    candidate = self._claim_next()
                except Exception:
                    logger.exception("Could not claim next queued task")
                    return None
                if candidate is None:
                    return None
                started = self._launch(candidate, candidate.continue_message)
                if started is not None:
                    return started
            return None

    def _slot_taken(self, exclude: str | None = None) -> bool:
        """True while a task is in progress or a run is still exiting."""
        if self.supervisor.running_count():
            return True
        return tasks_mod.find_task_in_progress(self.db, exclude=exclude) is not None

    def _claim_next(self) -> Task | None:
        """Move the head of the queue to progress if nothing holds the slot."""
        with self.db.write_lock:
            if self._slot_taken():
                return None
            candidate = next_queued_task(self.db)
            if candidate is None:
                return None
            logger.info(
                "Starting task %s (%s) from queue position %d",
                candidate.id, candidate.title, candidate.queue_position,
            )
            tasks_mod.update_task_status(self.db, candidate.id, PROGRESS)
            tasks_mod.reset_task_for_progress(self.db, candidate.id)
        self.hub.broadcast_status(candidate.id, PROGRESS, 0)
        return tasks_mod.get_task(self.db, candidate.id)

    def _launch(self, task: Task, feedback: str | None) -> Task | None:
        """Prepare the branch and start the agent; blocks the task on failure."""
        directory = resolve_project_dir(self.db, task)
        if not directory:
            self._block(task.id, "Project directory not specified")
            return None
        if not os.path.isdir(directory):
            self._block(task.id, f"Project directory does not exist: {directory}")
            return None

        try:
            task = prepare_run(self.db, task, self.config, self.hub)
        except GitError as e:
            self._block(task.id, f"Branch preparation failed: {e}")
            return None

        try:
            started = self.supervisor.start(task, feedback=feedback, continuation=bool(feedback))
        except AgentStartError as e:
            logger.warning("Task %s failed to start: %s", task.id, e)
            return None
        except ActiveTaskConflict as e:
            logger.warning("Task %s lost the execution slot (%s); returning it to the queue", task.id, e)
            self._requeue_front(task.id)
            return None
        except AgentError as e:
            logger.warning("Task %s not started: %s", task.id, e)
            self._block(task.id, str(e))
            return None
        if feedback:
            tasks_mod.set_continue_message(self.db, task.id, None)
        return started

    def _requeue_front(self, task_id: str):
        with self.db.write_lock:
            tasks_mod.update_task_status(self.db, task_id, BACKLOG)
            add_to_queue(self.db, task_id, front=True)
        self.hub.broadcast_task(tasks_mod.get_task(self.db, task_id))

    def _block(self, task_id: str, reason: str):
        logger.warning("Blocking task %s: %s", task_id, reason)
        task = tasks_mod.block_task(self.db, task_id, reason)
        self.hub.broadcast_log(task_id, f"[FORGE ERROR] {reason}\n")
        self.hub.broadcast_status(task_id, "blocked", 0)
        self.hub.broadcast_task(task)

    # ── Board transitions ───────────────────────────────────────────────────

    def move(self, task_id: str, status: str) -> Task:
        """Move a task on the board, keeping queue and process state consistent."""
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            raise ValueError(f"Task not found: {task_id}")
        if task.status == status:
            return task

        was_active = task.status == PROGRESS
        if self.supervisor.is_running(task_id):
            self.supervisor.stop(task_id)

        if status == QUEUED:
            if was_active:
                tasks_mod.update_task_status(self.db, task_id, BACKLOG)
            return self.enqueue(task_id)

        if status == PROGRESS:
            return self._move_to_progress(task_id)

        if status == DONE:
            clear_rollback_tag(self.db, task)

        task = tasks_mod.update_task_status(self.db, task_id, status)
        self.hub.broadcast_status(task_id, status, task.current_iteration)
        self.hub.broadcast_task(task)
        if was_active:
            self.request_advance()
        return task

    def _move_to_progress(self, task_id: str) -> Task:
        """Start ``task_id`` now if the slot is free, otherwise queue it."""
        with self._advance_lock:
            with self.db.write_lock:
                claimed = not self._slot_taken(exclude=task_id)
                if claimed:
                    tasks_mod.update_task_status(self.db, task_id, PROGRESS)
                    tasks_mod.reset_task_for_progress(self.db, task_id)
            if not claimed:
                return self.enqueue(task_id)
            task = tasks_mod.get_task(self.db, task_id)
            self.hub.broadcast_status(task_id, PROGRESS, 0)
            self._launch(task, task.continue_message)
        return tasks_mod.get_task(self.db, task_id)

    # ── Worker ──────────────────────────────────────────────────────────────

    def notify_completion(self, task_id: str):
        """Supervisor callback: a run for ``task_id`` has fully finished."""
        self._channel.put(task_id)

    def request_advance(self):
        self._channel.put(None)

    def start(self):
        """Start the advancement worker thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="queue-advance", daemon=True
        )
        self._thread.start()
        logger.info("Queue worker started")

    def stop(self):
        """Signal the worker thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Queue worker stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                notice = self._channel.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                if notice:
                    logger.debug("Advancing queue after task %s", notice)
                self.try_advance()
            except Exception:
                logger.exception("Error in queue worker loop")
            finally:
                self._channel.task_done()

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until no run is live and no notice is pending."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.supervisor.busy and self._channel.unfinished_tasks == 0:
                return True
            time.sleep(0.05)
        return False
