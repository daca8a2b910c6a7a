"""Wiring of store, event hub, supervisor, scheduler and GitHub client."""

import logging
import sqlite3
from dataclasses import dataclass

from agent_forge.config import Config, get_config
from agent_forge.core.events import EventHub
from agent_forge.core.queue import QueueScheduler
from agent_forge.core.recovery import recover_tasks
from agent_forge.core.supervisor import AgentSupervisor
from agent_forge.db.engine import init_db
from agent_forge.integrations.github import GitHubClient

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    db: sqlite3.Connection
    hub: EventHub
    supervisor: AgentSupervisor
    scheduler: QueueScheduler
    github: GitHubClient | None = None

    def start(self, recover: bool = True) -> list[str]:
        """Start the queue worker, optionally sweeping dead processes first."""
        self.scheduler.start()
        recovered = []
        if recover:
            recovered = recover_tasks(self.db, self.scheduler, self.hub)
            if recovered:
                logger.warning("Recovered %d task(s) after restart", len(recovered))
        return recovered

    def shutdown(self):
        self.scheduler.stop()
        stopped = self.supervisor.stop_all()
        if stopped:
            logger.info("Stopped %d agent process(es)", stopped)
        if self.github:
            self.github.close()

    def close(self):
        self.shutdown()
        self.db.close()


def build_runtime(config: Config | None = None, db: sqlite3.Connection | None = None) -> Runtime:
    config = config or get_config()
    db = db or init_db(config.db_path)
    hub = EventHub()
    github = GitHubClient(config.github_token) if config.github_token else None
    supervisor = AgentSupervisor(db, config, hub=hub, github=github)
    scheduler = QueueScheduler(db, supervisor, config, hub=hub)
    supervisor.on_process_exit = scheduler.notify_completion
    return Runtime(
        config=config,
        db=db,
        hub=hub,
        supervisor=supervisor,
        scheduler=scheduler,
        github=github,
    )
