"""Agent process supervision: spawn, stream, pause/resume/stop, completion."""

import logging
import os
import shlex
import signal
import sqlite3
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from agent_forge.config import Config
from agent_forge.core import tasks as tasks_mod
from agent_forge.core.briefs import build_brief, build_continuation_brief
from agent_forge.core.events import EventHub
from agent_forge.core.parser import (
    OUTCOME_BLOCKED,
    OUTCOME_ITERATION_LIMIT,
    OUTCOME_SUCCESS,
    OutputParser,
)
from agent_forge.core.projects import get_project, protected_patterns, resolve_project_dir
from agent_forge.core.workflow import complete_review
from agent_forge.db.models import (
    PROCESS_FINISHED,
    PROCESS_RUNNING,
    PROGRESS,
    REVIEW,
    Task,
)
from agent_forge.integrations import slack as slack_mod
from agent_forge.integrations.git import (
    GitError,
    get_current_branch,
    get_current_commit_hash,
    is_git_repository,
)
from agent_forge.integrations.github import GitHubClient

logger = logging.getLogger(__name__)

AGENT_FLAGS = [
    "--dangerously-skip-permissions",
    "--output-format",
    "stream-json",
    "--verbose",
]


class AgentError(Exception):
    """Base class for supervisor errors."""


class AgentAlreadyRunning(AgentError):
    """A process is already tracked for the task."""


class AgentStartError(AgentError):
    """The agent could not be started; the task has been blocked."""


class ActiveTaskConflict(AgentError):
    """Another task currently holds the single execution slot."""


class ProcessNotRunning(AgentError):
    """No process is tracked for the task."""


class UnsupportedOperation(AgentError):
    """The requested operation cannot be performed on an agent process."""


@dataclass
class RunningProcess:
    task_id: str
    proc: subprocess.Popen
    parser: OutputParser | None = None
    cancelled: bool = False
    paused: bool = False
    stdin_closed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)
    threads: list[threading.Thread] = field(default_factory=list)
    exited: threading.Event = field(default_factory=threading.Event)

    @property
    def pid(self) -> int:
        return self.proc.pid

    def close_stdin(self):
        with self.lock:
            if self.stdin_closed:
                return
            self.stdin_closed = True
        try:
            self.proc.stdin.close()
        except (OSError, ValueError):
            pass


class ProcessTable:
    """Task id to running process, behind a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: dict[str, RunningProcess] = {}

    def add(self, run: RunningProcess):
        with self._lock:
            if run.task_id in self._runs:
                raise AgentAlreadyRunning(f"Task {run.task_id} already has a running process")
            self._runs[run.task_id] = run

    def get(self, task_id: str) -> RunningProcess | None:
        with self._lock:
            return self._runs.get(task_id)

    def remove(self, task_id: str, run: RunningProcess | None = None) -> RunningProcess | None:
        """Remove the record for ``task_id``; with ``run`` only if it is that run."""
        with self._lock:
            current = self._runs.get(task_id)
            if current is None or (run is not None and current is not run):
                return None
            return self._runs.pop(task_id)

    def snapshot(self) -> list[RunningProcess]:
        with self._lock:
            return list(self._runs.values())

    def __contains__(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


class _RunSink:
    """Routes parser events for one run into the store and the event hub."""

    def __init__(self, supervisor: "AgentSupervisor", run: RunningProcess, directory: str):
        self.supervisor = supervisor
        self.run = run
        self.directory = directory

    @property
    def _db(self) -> sqlite3.Connection:
        return self.supervisor.db

    @property
    def _hub(self) -> EventHub:
        return self.supervisor.hub

    def on_line(self, line: str, stream: str) -> None:
        logger.debug("[%s %s] %s", self.run.task_id[:8], stream, line[:200])
        self._hub.broadcast_log(self.run.task_id, line + "\n")

    def on_flush(self, text: str) -> None:
        tasks_mod.append_task_logs(self._db, self.run.task_id, text)

    def on_iteration(self, iteration: int) -> None:
        if self.run.cancelled:
            return
        tasks_mod.update_task_iteration(self._db, self.run.task_id, iteration)
        self._hub.broadcast_status(self.run.task_id, PROGRESS, iteration)

    def on_finalize(self, outcome: str, reason: str) -> None:
        if self.run.cancelled:
            return
        task_id = self.run.task_id
        if outcome == OUTCOME_SUCCESS:
            if self.directory and is_git_repository(self.directory):
                try:
                    tasks_mod.update_task_commit_hash(
                        self._db, task_id, get_current_commit_hash(self.directory)
                    )
                except GitError as e:
                    logger.warning("Could not read commit hash for %s: %s", task_id, e)
            task = tasks_mod.update_task_status(self._db, task_id, REVIEW)
            self._hub.broadcast_status(task_id, REVIEW, task.current_iteration if task else 0)
            self._hub.broadcast_log(task_id, "\n[FORGE] Task moved to Review\n")
        elif outcome == OUTCOME_BLOCKED:
            task = tasks_mod.block_task(self._db, task_id, reason)
            self._hub.broadcast_status(task_id, "blocked", task.current_iteration if task else 0)
            self._hub.broadcast_log(task_id, "\n[FORGE] Task blocked\n")
        elif outcome == OUTCOME_ITERATION_LIMIT:
            task = tasks_mod.block_task(self._db, task_id, reason)
            self._hub.broadcast_status(task_id, "blocked", task.current_iteration if task else 0)
            self._hub.broadcast_log(task_id, f"\n[FORGE] {reason}\n")
        self._hub.broadcast_task(tasks_mod.get_task(self._db, task_id))

        if outcome == OUTCOME_ITERATION_LIMIT:
            self.supervisor.stop(task_id, cancel=False)


class AgentSupervisor:
    """Owns the agent process of the active task.

    Every run has a stdin writer, two output readers and a waiter thread.
    The waiter is the only place completion is handled; it calls
    ``on_process_exit(task_id)`` exactly once per run, after cleanup.

    A stopped run leaves the process table at once but keeps the execution
    slot until its process has actually exited.
    """

    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        hub: EventHub | None = None,
        github: GitHubClient | None = None,
        on_process_exit: Callable[[str], None] | None = None,
    ):
        self.db = db
        self.config = config
        self.hub = hub or EventHub()
        self.github = github
        self.on_process_exit = on_process_exit
        self.processes = ProcessTable()
        self._start_lock = threading.Lock()
        self._live_runs = 0
        self._active: list[RunningProcess] = []
        self._live_lock = threading.Lock()

    # ── Queries ─────────────────────────────────────────────────────────────

    def is_running(self, task_id: str) -> bool:
        return task_id in self.processes

    def running_count(self) -> int:
        """Number of agent processes that have not exited yet, stopped ones included."""
        with self._live_lock:
            return len(self._active)

    def _slot_holder(self) -> str | None:
        with self._live_lock:
            return self._active[0].task_id if self._active else None

    @property
    def busy(self) -> bool:
        """True while any run has not finished its completion handling."""
        with self._live_lock:
            return self._live_runs > 0

    # ── Start ───────────────────────────────────────────────────────────────

    def start(self, task: Task, feedback: str | None = None, continuation: bool = False) -> Task:
        """Spawn the agent for ``task`` and return the refreshed task."""
        with self._start_lock:
            if self.is_running(task.id):
                raise AgentAlreadyRunning(f"Task {task.id} already has a running process")

            self._check_slot(task.id)

            directory = resolve_project_dir(self.db, task)
            if not directory:
                self._fail(task.id, "Project directory not specified")
            if not os.path.isdir(directory):
                self._fail(task.id, f"Project directory does not exist: {directory}")

            if is_git_repository(directory):
                try:
                    branch = get_current_branch(directory)
                except GitError as e:
                    logger.warning("Could not read branch for %s: %s", directory, e)
                else:
                    if branch:
                        tasks_mod.update_task_branches(self.db, task.id, working_branch=branch)
                        self.hub.broadcast_branch_change(task.id, branch)
                        logger.info("Task %s working on branch %s", task.id, branch)

            task = tasks_mod.get_task(self.db, task.id)
            protected = protected_patterns(self.db, task.project_id)
            if continuation:
                brief = build_continuation_brief(task, protected, task.attachments, feedback or "")
            else:
                brief = build_brief(task, protected, task.attachments)

            cmd = shlex.split(self.config.agent_command) + AGENT_FLAGS
            self.hub.broadcast_log(task.id, "[FORGE] Preparing to start agent...\n")
            logger.info("Starting agent for task %s in %s: %s", task.id, directory, " ".join(cmd))
            try:
                proc = subprocess.Popen(
                    cmd,
                    cwd=directory,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    errors="replace",
                    bufsize=1,
                )
            except OSError as e:
                self._fail(task.id, f"Failed to start agent: {e}")

            run = RunningProcess(task_id=task.id, proc=proc)
            run.parser = OutputParser(
                task.id,
                task.max_iterations,
                _RunSink(self, run, directory),
                flush_interval=self.config.log_flush_interval,
            )
            self.processes.add(run)
            with self._live_lock:
                self._live_runs += 1
                self._active.append(run)

        tasks_mod.update_task_process_info(self.db, task.id, proc.pid, PROCESS_RUNNING)
        tasks_mod.mark_task_started(self.db, task.id)
        self.hub.broadcast_log(task.id, f"[FORGE] Agent started (PID {proc.pid})...\n")
        self.hub.broadcast_status(task.id, PROGRESS, task.current_iteration)

        self._spawn(run, f"stdin-{task.id[:8]}", self._write_brief, run, brief)
        readers = [
            self._spawn(run, f"stdout-{task.id[:8]}", self._read_stream, run, proc.stdout, "stdout"),
            self._spawn(run, f"stderr-{task.id[:8]}", self._read_stream, run, proc.stderr, "stderr"),
        ]
        self._spawn(run, f"waiter-{task.id[:8]}", self._wait, run, readers)

        updated = tasks_mod.get_task(self.db, task.id)
        self.hub.broadcast_task(updated)
        return updated

    def _check_slot(self, task_id: str):
        other = tasks_mod.find_task_in_progress(self.db, exclude=task_id)
        holder = other.id if other else self._slot_holder()
        if holder:
            raise ActiveTaskConflict(f"Task {holder} is already in progress")

    def _fail(self, task_id: str, message: str):
        logger.warning("Task %s cannot start: %s", task_id, message)
        task = tasks_mod.block_task(self.db, task_id, message)
        self.hub.broadcast_log(task_id, f"[FORGE ERROR] {message}\n")
        self.hub.broadcast_status(task_id, "blocked", task.current_iteration if task else 0)
        self.hub.broadcast_task(task)
        raise AgentStartError(message)

    def _spawn(self, run: RunningProcess, name: str, target, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        run.threads.append(thread)
        thread.start()
        return thread

    # ── Run threads ─────────────────────────────────────────────────────────

    def _write_brief(self, run: RunningProcess, brief: str):
        try:
            run.proc.stdin.write(brief + "\n")
            run.proc.stdin.flush()
        except (OSError, ValueError) as e:
            logger.warning("Could not write brief for task %s: %s", run.task_id, e)
        finally:
            run.close_stdin()
            logger.debug("Stdin closed for task %s", run.task_id)

    def _read_stream(self, run: RunningProcess, stream, name: str):
        try:
            for line in stream:
                run.parser.feed(line.rstrip("\r\n"), name)
        except Exception:
            logger.exception("Error reading %s for task %s", name, run.task_id)
        finally:
            try:
                run.parser.close_stream(name)
            except Exception:
                logger.exception("Error flushing %s logs for task %s", name, run.task_id)

    def _wait(self, run: RunningProcess, readers: list[threading.Thread]):
        task_id = run.task_id
        try:
            exit_code = run.proc.wait()
            for reader in readers:
                reader.join(timeout=10)
            self._handle_exit(run, exit_code)
        except Exception:
            logger.exception("Error handling exit of task %s", task_id)
        finally:
            with self._live_lock:
                if run in self._active:
                    self._active.remove(run)
            run.exited.set()
            try:
                if self.on_process_exit:
                    self.on_process_exit(task_id)
            except Exception:
                logger.exception("on_process_exit failed for task %s", task_id)
            with self._live_lock:
                self._live_runs -= 1

    def _handle_exit(self, run: RunningProcess, exit_code: int):
        task_id = run.task_id
        self.cleanup(task_id, run)

        if run.cancelled:
            self.hub.broadcast_log(task_id, "\n[FORGE] Process stopped\n")
            logger.info("Task %s process stopped (exit code %s)", task_id, exit_code)
            return

        if exit_code == 0:
            self.hub.broadcast_log(task_id, "\n[FORGE] Process completed\n")
        else:
            self.hub.broadcast_log(task_id, f"\n[FORGE] Process exited with code {exit_code}\n")

        outcome = run.parser.outcome
        logger.info("Task %s process exited (code %s, outcome %s)", task_id, exit_code, outcome)
        if outcome == OUTCOME_SUCCESS:
            complete_review(self.db, task_id, self.config, self.hub, self.github)
        elif outcome is None:
            message = (
                f"Agent exited with code {exit_code} without reporting [SUCCESS] or [BLOCKED]"
            )
            task = tasks_mod.block_task(self.db, task_id, message)
            self.hub.broadcast_status(task_id, "blocked", task.current_iteration if task else 0)
            self.hub.broadcast_log(task_id, f"[FORGE ERROR] {message}\n")
            self.hub.broadcast_task(task)

        self._notify(task_id, outcome or "no marker")

    def _notify(self, task_id: str, outcome: str):
        if not self.config.slack_bot_token:
            return
        task = tasks_mod.get_task(self.db, task_id)
        if not task or not task.project_id:
            return
        project = get_project(self.db, task.project_id)
        channel = project.slack_channel if project else None
        slack_mod.notify(
            self.config.slack_bot_token,
            channel,
            f"Agent run finished for {task.title}: {outcome}",
            slack_mod.format_run_finished(task, outcome),
        )

    # ── Control ─────────────────────────────────────────────────────────────

    def cleanup(self, task_id: str, run: RunningProcess | None = None) -> None:
        """Drop the in-memory record and clear the persisted process fields.

        With ``run`` given, nothing happens unless that run is still the
        tracked one, so a late waiter never clears a newer run.
        """
        removed = self.processes.remove(task_id, run)
        if run is not None and removed is None:
            return
        if removed is not None:
            removed.close_stdin()
        if tasks_mod.get_task(self.db, task_id) is None:
            return
        tasks_mod.update_task_process_info(self.db, task_id, 0, PROCESS_FINISHED)
        tasks_mod.mark_task_finished(self.db, task_id)

    def pause(self, task_id: str) -> None:
        run = self._require(task_id)
        with run.lock:
            if run.paused:
                raise AgentError("Process already paused")
            self._signal(run, signal.SIGSTOP)
            run.paused = True
        self.hub.broadcast_log(task_id, "\n[FORGE] Process paused\n")

    def resume(self, task_id: str) -> None:
        run = self._require(task_id)
        with run.lock:
            if not run.paused:
                raise AgentError("Process not paused")
            self._signal(run, signal.SIGCONT)
            run.paused = False
        self.hub.broadcast_log(task_id, "\n[FORGE] Process resumed\n")

    def stop(self, task_id: str, cancel: bool = True) -> bool:
        """Terminate the task's process. Returns False if nothing was tracked.

        With ``cancel`` false the exit is still handled as a finished run, which
        is how a run that hit its iteration limit gets its Slack notice.
        """
        run = self.processes.get(task_id)
        if run is None:
            return False

        run.close_stdin()
        with run.lock:
            run.cancelled = run.cancelled or cancel
            paused = run.paused
            run.paused = False
        try:
            if paused:
                run.proc.send_signal(signal.SIGCONT)
            run.proc.terminate()
        except ProcessLookupError:
            pass

        killer = threading.Thread(
            target=self._kill_after_timeout,
            args=(run,),
            name=f"killer-{task_id[:8]}",
            daemon=True,
        )
        killer.start()

        self.cleanup(task_id, run)
        self.hub.broadcast_log(task_id, "\n[FORGE] Stopping process...\n")
        logger.info("Stopped process %s for task %s", run.pid, task_id)
        return True

    def _kill_after_timeout(self, run: RunningProcess):
        try:
            run.proc.wait(timeout=self.config.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s ignored SIGTERM, killing", run.pid)
            try:
                run.proc.kill()
            except ProcessLookupError:
                pass

    def stop_all(self) -> int:
        runs = self.processes.snapshot()
        for run in runs:
            self.stop(run.task_id)
        return len(runs)

    def continue_task(self, task_id: str, feedback: str = "") -> Task:
        """Restart ``task_id`` with a continuation brief carrying ``feedback``."""
        task = tasks_mod.get_task(self.db, task_id)
        if not task:
            raise ValueError(f"Task not found: {task_id}")

        run = self.processes.get(task_id)
        if run is not None:
            self.hub.broadcast_log(task_id, "\n[FORGE] Stopping current process to apply feedback...\n")
            self.stop(task_id)
            if not run.exited.wait(self.config.stop_timeout + 5):
                logger.warning("Process %s for task %s has not exited yet", run.pid, task_id)
            time.sleep(self.config.continue_grace)

        with self.db.write_lock:
            self._check_slot(task_id)
            # leaving the queue closes the gap behind the task
            tasks_mod.update_task_status(self.db, task_id, PROGRESS)
            tasks_mod.update_task_error(self.db, task_id, "")
            tasks_mod.set_continue_message(self.db, task_id, None)
            task = tasks_mod.get_task(self.db, task_id)
        self.hub.broadcast_status(task_id, PROGRESS, task.current_iteration)
        self.hub.broadcast_task(task)
        self.hub.broadcast_log(task_id, "\n[FORGE] Continuing task...\n")
        return self.start(task, feedback=feedback, continuation=True)

    def send_input(self, task_id: str, text: str) -> None:
        raise UnsupportedOperation(
            "Cannot send input to a running agent: stdin is closed after the brief. "
            "Use continue with feedback instead."
        )

    def _require(self, task_id: str) -> RunningProcess:
        run = self.processes.get(task_id)
        if run is None:
            raise ProcessNotRunning(f"No running process for task {task_id}")
        return run

    def _signal(self, run: RunningProcess, sig: int):
        try:
            run.proc.send_signal(sig)
        except ProcessLookupError as e:
            raise AgentError(f"Failed to signal process {run.pid}: {e}") from e
