"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_forge" / "forge.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    agent_command: str = "claude"
    default_max_iterations: int = 10
    default_branch: str = "main"
    log_flush_interval: float = 5.0
    stop_timeout: float = 5.0
    continue_grace: float = 0.1
    auto_merge: bool = False
    auto_push: bool = False
    github_token: str | None = None
    slack_bot_token: str | None = None
    server_url: str = "http://127.0.0.1:8787"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("FORGE_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("FORGE_REPO_PATH"):
            config.repo_path = Path(repo)

        if command := os.environ.get("FORGE_AGENT_COMMAND"):
            config.agent_command = command

        if max_iter := os.environ.get("FORGE_MAX_ITERATIONS"):
            config.default_max_iterations = int(max_iter)

        if branch := os.environ.get("FORGE_DEFAULT_BRANCH"):
            config.default_branch = branch

        if interval := os.environ.get("FORGE_LOG_FLUSH_INTERVAL"):
            config.log_flush_interval = float(interval)

        if timeout := os.environ.get("FORGE_STOP_TIMEOUT"):
            config.stop_timeout = float(timeout)

        if grace := os.environ.get("FORGE_CONTINUE_GRACE"):
            config.continue_grace = float(grace)

        if auto_merge := os.environ.get("FORGE_AUTO_MERGE"):
            config.auto_merge = auto_merge.lower() in _TRUTHY

        if auto_push := os.environ.get("FORGE_AUTO_PUSH"):
            config.auto_push = auto_push.lower() in _TRUTHY

        if server := os.environ.get("FORGE_SERVER_URL"):
            config.server_url = server.rstrip("/")

        config.github_token = os.environ.get("GITHUB_TOKEN")
        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        return config


def get_config() -> Config:
    return Config.from_env()
