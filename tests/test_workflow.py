"""Tests for branch preparation, merge, conflict escalation and rollback."""

from unittest.mock import MagicMock, patch

import pytest

from agent_forge.core import projects as projects_mod
from agent_forge.core import tasks as tasks_mod
from agent_forge.core import workflow
from agent_forge.core.events import EventHub
from agent_forge.db.models import BACKLOG, DONE, PROGRESS, REVIEW
from agent_forge.integrations import git as git_mod
from agent_forge.integrations.github import PullRequest

from conftest import git


def commit_file(repo, name, content, message):
    (repo / name).write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-m", message)


def prepared_task(db, config, title="Feature", **kwargs):
    task = tasks_mod.create_task(db, title, "demo", **kwargs)
    tasks_mod.update_task_status(db, task.id, PROGRESS)
    return workflow.prepare_run(db, tasks_mod.get_task(db, task.id), config)


def make_conflict(repo, task):
    commit_file(repo, "README.md", "branch\n", "branch edit")
    git_mod.checkout_branch(repo, "main")
    commit_file(repo, "README.md", "main\n", "main edit")
    git_mod.checkout_branch(repo, task.working_branch)


class TestPrepareRun:
    def test_branch_per_task(self, db, config, git_repo):
        task = prepared_task(db, config, "Add search")
        assert task.working_branch == git_mod.working_branch_name(task.id, "Add search")
        assert task.target_branch == "main"
        assert git_mod.get_current_branch(git_repo) == task.working_branch
        assert task.rollback_tag in git(git_repo, "tag", "--list")

    def test_explicit_target_branch(self, db, config, git_repo):
        git(git_repo, "branch", "develop")
        task = prepared_task(db, config, target_branch="develop")
        assert task.target_branch == "develop"

    def test_trunk_mode(self, db, config, git_repo):
        projects_mod.set_working_branch(db, "demo", "develop")
        task = prepared_task(db, config)
        assert task.working_branch == task.target_branch == "develop"
        assert git_mod.get_current_branch(git_repo) == "develop"

    def test_rerun_replaces_tag(self, db, config, git_repo):
        first = prepared_task(db, config)
        second = workflow.prepare_run(db, first, config)
        tags = git(git_repo, "tag", "--list").splitlines()
        assert tags == [second.rollback_tag]

    def test_non_git_directory_untouched(self, db, config, tmp):
        plain = tmp / "plain"
        plain.mkdir()
        task = tasks_mod.create_task(db, "X", "demo", project_dir=str(plain))
        prepared = workflow.prepare_run(db, task, config)
        assert prepared.working_branch is None
        assert prepared.rollback_tag is None


class TestCommitsAhead:
    def test_counts_branch_commits(self, db, config, git_repo):
        task = prepared_task(db, config)
        assert workflow.commits_ahead(db, task, config) == 0
        commit_file(git_repo, "a.txt", "a", "agent work")
        assert workflow.commits_ahead(db, task, config) == 1

    def test_unknown_without_branch(self, db, config):
        task = tasks_mod.create_task(db, "X", "demo")
        assert workflow.commits_ahead(db, task, config) is None

    def test_trunk_mode(self, db, config):
        projects_mod.set_working_branch(db, "demo", "main")
        task = prepared_task(db, config)
        assert workflow.commits_ahead(db, task, config) == 0


class TestMerge:
    def test_merge_success(self, db, config, git_repo):
        task = prepared_task(db, config)
        (git_repo / "feature.txt").write_text("done")
        tasks_mod.update_task_status(db, task.id, REVIEW)
        hub = EventHub()
        q = hub.subscribe()

        result = workflow.merge_task(db, task.id, config, hub)
        assert result.success
        task_after = tasks_mod.get_task(db, task.id)
        assert task_after.status == DONE
        assert task_after.rollback_tag is None
        assert task_after.commit_hash == git_mod.get_current_commit_hash(git_repo)
        assert git_mod.get_current_branch(git_repo) == "main"
        assert not git_mod.branch_exists(git_repo, task.working_branch)
        assert git(git_repo, "tag", "--list") == ""
        assert any(m["type"] == "status" and m["status"] == DONE for m in list(q.queue))

    def test_nothing_to_merge_in_trunk_mode(self, db, config):
        projects_mod.set_working_branch(db, "demo", "main")
        task = prepared_task(db, config)
        result = workflow.merge_task(db, task.id, config)
        assert result.success
        assert "Nothing to merge" in result.message
        assert tasks_mod.get_task(db, task.id).status == DONE

    def test_deleted_branch_treated_as_merged(self, db, config, git_repo):
        task = prepared_task(db, config)
        git_mod.checkout_branch(git_repo, "main")
        git_mod.delete_branch(git_repo, task.working_branch, force=True)
        result = workflow.merge_task(db, task.id, config)
        assert result.success
        assert tasks_mod.get_task(db, task.id).status == DONE

    def test_missing_task(self, db, config):
        with pytest.raises(ValueError, match="Task not found"):
            workflow.merge_task(db, "missing", config)

    def test_conflict_without_github(self, db, config, git_repo):
        task = prepared_task(db, config)
        make_conflict(git_repo, task)
        tasks_mod.update_task_status(db, task.id, REVIEW)

        result = workflow.merge_task(db, task.id, config)
        assert not result.success
        assert result.conflict.files == ["README.md"]
        task = tasks_mod.get_task(db, task.id)
        assert task.status == REVIEW
        assert "resolve manually" in task.error
        assert task.conflict_pr_url is None
        assert git_mod.get_current_branch(git_repo) == task.working_branch

    def test_conflict_opens_pull_request(self, db, config, git_repo):
        task = prepared_task(db, config, "Login page")
        make_conflict(git_repo, task)
        github = MagicMock()
        github.find_existing_pr.return_value = None
        github.create_pull_request.return_value = PullRequest(
            number=12, html_url="https://github.com/acme/app/pull/12"
        )
        hub = EventHub()
        q = hub.subscribe()

        with patch.object(git_mod, "get_remote_url", return_value="git@github.com:acme/app.git"):
            result = workflow.merge_task(db, task.id, config, hub, github)

        assert not result.success
        kwargs = github.create_pull_request.call_args.kwargs
        assert kwargs["head"] == task.working_branch
        assert kwargs["base"] == "main"
        assert kwargs["title"] == "[Forge] Login page"
        assert "README.md" in kwargs["body"]
        task = tasks_mod.get_task(db, task.id)
        assert task.conflict_pr_url == "https://github.com/acme/app/pull/12"
        assert task.conflict_pr_number == 12
        conflicts = [m for m in list(q.queue) if m["type"] == "merge_conflict"]
        assert conflicts[0]["pr_url"] == "https://github.com/acme/app/pull/12"

    def test_conflict_reuses_existing_pull_request(self, db, config, git_repo):
        task = prepared_task(db, config)
        make_conflict(git_repo, task)
        github = MagicMock()
        github.find_existing_pr.return_value = PullRequest(
            number=3, html_url="https://github.com/acme/app/pull/3"
        )
        with patch.object(git_mod, "get_remote_url", return_value="https://github.com/acme/app.git"):
            workflow.merge_task(db, task.id, config, None, github)
        github.create_pull_request.assert_not_called()
        assert tasks_mod.get_task(db, task.id).conflict_pr_number == 3


class TestCompleteReview:
    def test_auto_merge(self, db, config, git_repo):
        config.auto_merge = True
        task = prepared_task(db, config)
        (git_repo / "feature.txt").write_text("done")
        tasks_mod.update_task_status(db, task.id, REVIEW)
        workflow.complete_review(db, task.id, config)
        assert tasks_mod.get_task(db, task.id).status == DONE
        assert (git_repo / "feature.txt").exists()
        assert git_mod.get_current_branch(git_repo) == "main"

    def test_no_auto_merge_leaves_review(self, db, config, git_repo):
        task = prepared_task(db, config)
        tasks_mod.update_task_status(db, task.id, REVIEW)
        workflow.complete_review(db, task.id, config)
        assert tasks_mod.get_task(db, task.id).status == REVIEW
        assert git_mod.get_current_branch(git_repo) == task.working_branch


class TestRollback:
    def test_rollback_resets_work(self, db, config, git_repo):
        task = prepared_task(db, config)
        before = git_mod.get_current_commit_hash(git_repo)
        commit_file(git_repo, "bad.txt", "oops", "agent work")
        tasks_mod.update_task_status(db, task.id, REVIEW)

        rolled = workflow.rollback_task(db, task.id)
        assert rolled.status == BACKLOG
        assert rolled.rollback_tag is None
        assert git_mod.get_current_commit_hash(git_repo) == before
        assert not (git_repo / "bad.txt").exists()

    def test_rollback_requires_finished_run(self, db, config):
        task = prepared_task(db, config)
        with pytest.raises(ValueError, match="Cannot roll back"):
            workflow.rollback_task(db, task.id)

    def test_rollback_requires_tag(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        tasks_mod.update_task_status(db, task.id, REVIEW)
        with pytest.raises(ValueError, match="no rollback tag"):
            workflow.rollback_task(db, task.id)


class TestResolveConflict:
    def test_continues_with_conflict_brief(self, db, config, git_repo):
        task = prepared_task(db, config)
        git_mod.checkout_branch(git_repo, "main")
        supervisor = MagicMock()
        supervisor.config = config

        workflow.resolve_conflict(db, task.id, supervisor, ["README.md"])

        task_id, brief = supervisor.continue_task.call_args.args
        assert task_id == task.id
        assert "README.md" in brief
        assert "Rebase onto `main`" in brief
        assert git_mod.get_current_branch(git_repo) == task.working_branch

    def test_requires_working_branch(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        with pytest.raises(ValueError, match="no working branch"):
            workflow.resolve_conflict(db, task.id, MagicMock())
