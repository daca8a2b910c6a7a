"""Shared fixtures: temporary git repositories, stores and fake agents."""

import stat
import subprocess
import tempfile
import textwrap
import time
from pathlib import Path

import pytest

from agent_forge.config import Config
from agent_forge.core import projects as projects_mod
from agent_forge.db.engine import init_db


def git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    ).stdout.strip()


def init_repo(path: Path):
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "checkout", "-b", "main")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test")
    (path / "README.md").write_text("# Test\n")
    git(path, "add", ".")
    git(path, "commit", "-m", "init")


@pytest.fixture
def tmp():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def git_repo(tmp):
    """A repository on ``main`` with one commit."""
    repo = tmp / "repo"
    init_repo(repo)
    return repo


@pytest.fixture
def db(tmp, git_repo):
    """A store with a ``demo`` project pointing at ``git_repo``."""
    conn = init_db(tmp / "state" / "forge.db")
    projects_mod.create_project(conn, "demo", "Demo", str(git_repo))
    yield conn
    conn.close()


@pytest.fixture
def make_agent(tmp):
    """Write an executable shell script that stands in for the agent CLI."""
    counter = {"n": 0}

    def _make(body: str) -> str:
        counter["n"] += 1
        path = tmp / f"agent{counter['n']}.sh"
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body).lstrip("\n"))
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return _make


@pytest.fixture
def config(tmp, git_repo):
    return Config(
        db_path=tmp / "state" / "forge.db",
        repo_path=git_repo,
        log_flush_interval=0.0,
        stop_timeout=1.0,
        continue_grace=0.05,
    )


SUCCESS_AGENT = """
cat >/dev/null
echo "[ITERATION 1] working"
echo "[SUCCESS]"
"""

BLOCKED_AGENT = """
cat >/dev/null
echo "[ITERATION 1]"
echo "[BLOCKED] need credentials"
"""

SILENT_AGENT = """
cat >/dev/null
echo "thinking"
exit 3
"""

SLEEPY_AGENT = """
cat >/dev/null
echo "[ITERATION 1]"
exec sleep 30
"""

STUBBORN_AGENT = """
trap '' TERM
cat >/dev/null
echo "[ITERATION 1]"
while true; do sleep 0.1; done
"""


@pytest.fixture(autouse=True)
def _isolated_env(tmp, monkeypatch):
    monkeypatch.setenv("FORGE_DB_PATH", str(tmp / "state" / "forge.db"))
    for key in ("GITHUB_TOKEN", "SLACK_BOT_TOKEN", "FORGE_AUTO_MERGE", "FORGE_AUTO_PUSH"):
        monkeypatch.delenv(key, raising=False)


def wait_until(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False
