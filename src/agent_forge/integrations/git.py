"""Git subprocess wrappers for branch, tag, and merge operations."""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from agent_forge.core.tasks import slugify

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "forge/"
ROLLBACK_TAG_PREFIX = "forge-rollback/"


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class MergeConflict:
    files: list[str] = field(default_factory=list)
    source_branch: str = ""
    target_branch: str = ""


@dataclass
class MergeResult:
    success: bool
    message: str
    conflict: MergeConflict | None = None


def run_git(args: list[str], cwd: str | Path | None = None) -> str:
    """Run a git command and return stdout. Raises GitError on failure."""
    cmd = ["git"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        detail = e.stderr.strip() or e.stdout.strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from e
    except OSError as e:
        raise GitError(f"git {' '.join(args)} failed: {e}") from e


# ── Repository inspection ───────────────────────────────────────────────────


def is_git_repository(path: str | Path) -> bool:
    try:
        return run_git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except GitError:
        return False


def get_current_branch(cwd: str | Path) -> str:
    """Get the current branch name."""
    return run_git(["branch", "--show-current"], cwd=cwd)


def list_branches(cwd: str | Path) -> list[str]:
    output = run_git(["branch", "--format=%(refname:short)"], cwd=cwd)
    return [line.strip() for line in output.splitlines() if line.strip()]


def list_all_branches(cwd: str | Path) -> list[str]:
    """Local and remote-tracking branches."""
    output = run_git(["branch", "-a", "--format=%(refname:short)"], cwd=cwd)
    return [line.strip() for line in output.splitlines() if line.strip()]


def get_remote_url(cwd: str | Path) -> str:
    return run_git(["remote", "get-url", "origin"], cwd=cwd)


def set_remote_origin(cwd: str | Path, url: str) -> None:
    """Point ``origin`` at ``url``, adding the remote if it is missing."""
    if has_remote(cwd):
        run_git(["remote", "set-url", "origin", url], cwd=cwd)
    else:
        run_git(["remote", "add", "origin", url], cwd=cwd)


def has_remote(cwd: str | Path) -> bool:
    try:
        remotes = run_git(["remote"], cwd=cwd).split()
    except GitError:
        return False
    return "origin" in remotes


def get_git_info(path: str | Path) -> dict:
    """Summary of a directory's repository state, for the API and CLI."""
    if not Path(path).is_dir() or not is_git_repository(path):
        return {"is_repo": False, "path": str(path)}

    info = {
        "is_repo": True,
        "path": str(path),
        "branch": get_current_branch(path),
        "branches": list_branches(path),
        "remote_url": None,
        "has_uncommitted_changes": has_uncommitted_changes(path),
    }
    if has_remote(path):
        info["remote_url"] = get_remote_url(path)
        info["branches"] = list_all_branches(path)
    return info


def branch_exists(repo_path: str | Path, branch: str) -> bool:
    """Check if a local branch exists."""
    try:
        run_git(["rev-parse", "--verify", f"refs/heads/{branch}"], cwd=repo_path)
        return True
    except GitError:
        return False


def remote_branch_exists(cwd: str | Path, branch: str) -> bool:
    if not has_remote(cwd):
        return False
    try:
        return bool(run_git(["ls-remote", "--heads", "origin", branch], cwd=cwd))
    except GitError:
        return False


def get_default_branch(cwd: str | Path, fallback: str = "main") -> str:
    """Best guess at the repository's default branch."""
    try:
        ref = run_git(["symbolic-ref", "--short", "refs/remotes/origin/HEAD"], cwd=cwd)
        if ref:
            return ref.split("/", 1)[-1]
    except GitError:
        pass
    for candidate in (fallback, "main", "master"):
        if branch_exists(cwd, candidate):
            return candidate
    return fallback


def has_uncommitted_changes(cwd: str | Path) -> bool:
    return bool(run_git(["status", "--porcelain"], cwd=cwd))


def get_current_commit_hash(cwd: str | Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd=cwd)


def get_commits_ahead(cwd: str | Path, base: str, branch: str) -> int:
    """Number of commits on ``branch`` that are not on ``base``."""
    return int(run_git(["rev-list", "--count", f"{base}..{branch}"], cwd=cwd) or 0)


def get_conflict_files(cwd: str | Path) -> list[str]:
    output = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd)
    return [line for line in output.splitlines() if line]


# ── Branch operations ───────────────────────────────────────────────────────


def checkout_branch(cwd: str | Path, branch: str) -> str:
    return run_git(["checkout", branch], cwd=cwd)


def create_and_checkout_branch(cwd: str | Path, branch: str) -> str:
    return run_git(["checkout", "-b", branch], cwd=cwd)


def ensure_on_branch(cwd: str | Path, branch: str) -> None:
    """Check out ``branch`` unless it is already the current branch."""
    if get_current_branch(cwd) != branch:
        checkout_branch(cwd, branch)


def delete_branch(repo_path: str | Path, branch: str, force: bool = False) -> str:
    """Delete a branch."""
    flag = "-D" if force else "-d"
    return run_git(["branch", flag, branch], cwd=repo_path)


def delete_remote_branch(cwd: str | Path, branch: str) -> str:
    return run_git(["push", "origin", "--delete", branch], cwd=cwd)


def commit_all_changes(cwd: str | Path, message: str) -> str:
    """Stage everything, commit, and return the new commit hash."""
    run_git(["add", "-A"], cwd=cwd)
    run_git(["commit", "-m", message], cwd=cwd)
    return get_current_commit_hash(cwd)


def push_to_remote(cwd: str | Path, branch: str | None = None) -> str:
    branch = branch or get_current_branch(cwd)
    return run_git(["push", "-u", "origin", branch], cwd=cwd)


def pull_from_remote(cwd: str | Path, branch: str | None = None) -> str:
    branch = branch or get_current_branch(cwd)
    return run_git(["pull", "--no-rebase", "origin", branch], cwd=cwd)


def working_branch_name(task_id: str, title: str) -> str:
    """Deterministic per-task branch name, e.g. ``forge/1a2b3c4d-fix-login``."""
    short_id = task_id[:8]
    slug = slugify(title)[:40].strip("-")
    if not slug:
        return f"{BRANCH_PREFIX}{short_id}"
    return f"{BRANCH_PREFIX}{short_id}-{slug}"


def create_working_branch(
    cwd: str | Path,
    task_id: str,
    title: str,
    base_branch: str | None = None,
) -> str:
    """Create (or reuse) the task's working branch off the base branch and check it out."""
    base = base_branch or get_default_branch(cwd)
    if branch_exists(cwd, base):
        ensure_on_branch(cwd, base)

    branch = working_branch_name(task_id, title)
    if branch_exists(cwd, branch):
        checkout_branch(cwd, branch)
    else:
        create_and_checkout_branch(cwd, branch)
    logger.info("Working branch %s ready (base %s)", branch, base)
    return branch


# ── Protected branches ──────────────────────────────────────────────────────


def match_branch_pattern(branch: str, pattern: str) -> bool:
    """Exact name, or a ``prefix*suffix`` glob with a single wildcard."""
    if branch == pattern:
        return True
    if "*" not in pattern:
        return False
    parts = pattern.split("*")
    if len(parts) != 2:
        return False
    prefix, suffix = parts
    return (
        len(branch) >= len(prefix) + len(suffix)
        and branch.startswith(prefix)
        and branch.endswith(suffix)
    )


def is_branch_protected(branch: str, patterns: list[str]) -> bool:
    return any(match_branch_pattern(branch, p) for p in patterns)


# ── Rollback tags ───────────────────────────────────────────────────────────


def create_rollback_tag(cwd: str | Path, task_id: str) -> str:
    """Tag the current HEAD so a run can be reverted later."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    tag = f"{ROLLBACK_TAG_PREFIX}{task_id[:8]}-{stamp}"
    run_git(["tag", "-f", tag], cwd=cwd)
    return tag


def delete_tag(cwd: str | Path, tag: str) -> str:
    return run_git(["tag", "-d", tag], cwd=cwd)


def rollback_to_tag(cwd: str | Path, tag: str) -> str:
    """Hard-reset the current branch to ``tag``."""
    return run_git(["reset", "--hard", tag], cwd=cwd)


# ── Review and merge ────────────────────────────────────────────────────────


def _commit_message(title: str, task_id: str) -> str:
    return f"forge: {title}\n\nTask: {task_id}"


def push_for_review(cwd: str | Path, branch: str, title: str, task_id: str = "") -> str:
    """Commit pending work on ``branch`` and push it. Raises GitError on failure."""
    ensure_on_branch(cwd, branch)
    if has_uncommitted_changes(cwd):
        commit_all_changes(cwd, _commit_message(title, task_id))
    return push_to_remote(cwd, branch)


def try_merge(
    cwd: str | Path,
    working_branch: str,
    target_branch: str,
    task_id: str,
    title: str,
) -> MergeResult:
    """Merge ``working_branch`` into ``target_branch``.

    Conflicts never raise: the merge is aborted, the working branch is checked
    out again and a result carrying the conflicting files is returned. Other
    git failures (missing branches, checkout errors) raise GitError.
    """
    remote = has_remote(cwd)

    ensure_on_branch(cwd, working_branch)
    if has_uncommitted_changes(cwd):
        commit_all_changes(cwd, _commit_message(title, task_id))

    if remote:
        try:
            push_to_remote(cwd, working_branch)
        except GitError as e:
            logger.warning("Push of %s failed before merge: %s", working_branch, e)

    checkout_branch(cwd, target_branch)
    if remote:
        try:
            pull_from_remote(cwd, target_branch)
        except GitError as e:
            logger.warning("Pull of %s failed before merge: %s", target_branch, e)

    message = f"Merge {working_branch} into {target_branch}: {title}\n\nTask: {task_id}"
    try:
        run_git(["merge", "--no-ff", "-m", message, working_branch], cwd=cwd)
    except GitError as e:
        files = get_conflict_files(cwd)
        try:
            run_git(["merge", "--abort"], cwd=cwd)
        except GitError:
            logger.warning("git merge --abort failed in %s", cwd)
        checkout_branch(cwd, working_branch)
        logger.info("Merge of %s into %s conflicted: %s", working_branch, target_branch, files)
        return MergeResult(
            success=False,
            message=f"Merge conflict: {e}",
            conflict=MergeConflict(
                files=files,
                source_branch=working_branch,
                target_branch=target_branch,
            ),
        )

    notes = []
    if remote:
        try:
            push_to_remote(cwd, target_branch)
        except GitError as e:
            logger.warning("Push of %s failed after merge: %s", target_branch, e)
            notes.append(f"push failed: {e}")

    delete_branch(cwd, working_branch, force=True)
    if remote_branch_exists(cwd, working_branch):
        try:
            delete_remote_branch(cwd, working_branch)
        except GitError as e:
            logger.warning("Could not delete remote branch %s: %s", working_branch, e)

    summary = f"Merged {working_branch} into {target_branch}"
    if notes:
        summary += f" ({'; '.join(notes)})"
    return MergeResult(success=True, message=summary)


_GITHUB_URL = re.compile(
    r"^(?:https?://(?:[^@/]+@)?github\.com/|git@github\.com:|ssh://git@github\.com/)"
    r"(?P<owner>[^/]+)/(?P<repo>[^/]+?)(?:\.git)?/?$"
)


def parse_github_repo(remote_url: str) -> str:
    """``owner/repo`` from an https or ssh GitHub remote URL."""
    match = _GITHUB_URL.match(remote_url.strip())
    if not match:
        raise ValueError(f"Not a GitHub remote: {remote_url}")
    return f"{match['owner']}/{match['repo']}"
