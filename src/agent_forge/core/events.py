"""In-process broadcast hub for live task events."""

import logging
import queue
import threading

from agent_forge.core.serialize import task_dict
from agent_forge.db.models import Task

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE = 1000


class EventHub:
    """Fan-out of event dicts to subscriber queues.

    Publishing never blocks: a subscriber whose queue is full is dropped.
    """

    def __init__(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE):
        self._maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: list[queue.Queue] = []

    def subscribe(self) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self._maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put_nowait(message)
            except queue.Full:
                logger.warning("Dropping slow event subscriber")
                self.unsubscribe(q)

    def broadcast_log(self, task_id: str, text: str) -> None:
        self.publish({"type": "log", "task_id": task_id, "message": text})

    def broadcast_status(self, task_id: str, status: str, iteration: int = 0) -> None:
        self.publish({
            "type": "status",
            "task_id": task_id,
            "status": status,
            "iteration": iteration,
        })

    def broadcast_task(self, task: Task | None) -> None:
        if task is None:
            return
        self.publish({
            "type": "task_updated",
            "task_id": task.id,
            "task": task_dict(task, include_logs=False),
        })

    def broadcast_branch_change(self, task_id: str, branch: str) -> None:
        self.publish({"type": "branch_change", "task_id": task_id, "branch": branch})

    def broadcast_merge_conflict(
        self,
        task_id: str,
        files: list[str],
        pr_url: str | None = None,
    ) -> None:
        self.publish({
            "type": "merge_conflict",
            "task_id": task_id,
            "files": files,
            "pr_url": pr_url,
        })
