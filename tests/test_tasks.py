"""Tests for the task, project and branch-rule store."""

import pytest

from agent_forge.core import projects as projects_mod
from agent_forge.core import tasks as tasks_mod
from agent_forge.db.models import BACKLOG, BLOCKED, DONE, PROCESS_RUNNING, PROGRESS, QUEUED, REVIEW


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Fix Login Bug") == "fix-login-bug"

    def test_special_chars(self):
        assert tasks_mod.slugify("Add OAuth2.0 (Google)") == "add-oauth20-google"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) == 60


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Fix login", "demo", description="Broken on Safari")
        assert len(task.id) == 36
        assert task.status == BACKLOG
        assert task.queue_position == 0
        assert task.current_iteration == 0
        assert task.description == "Broken on Safari"

    def test_priority_and_iterations_clamped(self, db):
        task = tasks_mod.create_task(db, "Clamp", "demo", priority=9, max_iterations=0)
        assert task.priority == 3
        assert task.max_iterations == 1

    def test_get_missing(self, db):
        assert tasks_mod.get_task(db, "nope") is None

    def test_list_filters(self, db):
        a = tasks_mod.create_task(db, "A", "demo")
        tasks_mod.create_task(db, "B", "demo")
        tasks_mod.update_task_status(db, a.id, REVIEW)
        assert [t.id for t in tasks_mod.list_tasks(db, "demo", status=REVIEW)] == [a.id]
        assert len(tasks_mod.list_tasks(db, "demo")) == 2
        assert len(tasks_mod.list_tasks(db)) == 2

    def test_update_fields_ignores_unknown(self, db):
        task = tasks_mod.create_task(db, "Old", "demo")
        updated = tasks_mod.update_task_fields(db, task.id, title="New", status="done")
        assert updated.title == "New"
        assert updated.status == BACKLOG

    def test_delete(self, db):
        task = tasks_mod.create_task(db, "Gone", "demo")
        projects_mod.add_attachment(db, task.id, "shot.png", "/tmp/shot.png", "image/png")
        assert tasks_mod.delete_task(db, task.id) is True
        assert tasks_mod.get_task(db, task.id) is None
        assert tasks_mod.delete_task(db, task.id) is False


class TestTaskStatus:
    def test_invalid_status(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        with pytest.raises(ValueError, match="Invalid status"):
            tasks_mod.update_task_status(db, task.id, "in-progress")

    def test_done_sets_completed_at(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        updated = tasks_mod.update_task_status(db, task.id, DONE)
        assert updated.completed_at is not None

    def test_status_change_logged(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        tasks_mod.update_task_status(db, task.id, PROGRESS)
        events = tasks_mod.get_task_events(db, task.id)
        assert events[0].event_type == "created"
        assert (events[-1].old_value, events[-1].new_value) == (BACKLOG, PROGRESS)

    def test_block_records_reason(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        blocked = tasks_mod.block_task(db, task.id, "no tests")
        assert blocked.status == BLOCKED
        assert blocked.error == "no tests"

    def test_find_task_in_progress(self, db):
        a = tasks_mod.create_task(db, "A", "demo")
        assert tasks_mod.find_task_in_progress(db) is None
        tasks_mod.update_task_status(db, a.id, PROGRESS)
        assert tasks_mod.find_task_in_progress(db).id == a.id
        assert tasks_mod.find_task_in_progress(db, exclude=a.id) is None

    def test_leaving_queue_closes_gap(self, db):
        ids = [tasks_mod.create_task(db, t, "demo").id for t in ("A", "B", "C")]
        for position, task_id in enumerate(ids, start=1):
            tasks_mod.update_task_status(db, task_id, QUEUED)
            db.execute("UPDATE tasks SET queue_position = ? WHERE id = ?", (position, task_id))
        db.commit()

        started = tasks_mod.update_task_status(db, ids[0], PROGRESS)
        assert started.queue_position == 0
        assert [tasks_mod.get_task(db, i).queue_position for i in ids[1:]] == [1, 2]
        assert tasks_mod.get_task_events(db, ids[0])[-2].event_type == "dequeued"


class TestRunState:
    def test_logs_append(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        tasks_mod.append_task_logs(db, task.id, "one\n")
        tasks_mod.append_task_logs(db, task.id, "two\n")
        assert tasks_mod.get_task(db, task.id).logs == "one\ntwo\n"

    def test_reset_for_progress(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        tasks_mod.append_task_logs(db, task.id, "old")
        tasks_mod.update_task_iteration(db, task.id, 4)
        tasks_mod.update_task_error(db, task.id, "boom")
        tasks_mod.update_task_branches(db, task.id, working_branch="forge/x", target_branch="main")
        tasks_mod.reset_task_for_progress(db, task.id)
        task = tasks_mod.get_task(db, task.id)
        assert (task.logs, task.error, task.current_iteration) == ("", "", 0)
        assert task.working_branch is None
        assert task.target_branch == "main"

    def test_process_info(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        tasks_mod.update_task_process_info(db, task.id, 4242, PROCESS_RUNNING)
        assert [t.id for t in tasks_mod.list_tasks_with_process(db)] == [task.id]
        tasks_mod.update_task_process_info(db, task.id, 0, "finished")
        assert tasks_mod.list_tasks_with_process(db) == []

    def test_conflict_pr(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        updated = tasks_mod.update_task_conflict_pr(db, task.id, "https://github.com/o/r/pull/7", 7)
        assert updated.conflict_pr_url == "https://github.com/o/r/pull/7"
        assert updated.conflict_pr_number == 7


class TestProjects:
    def test_ensure_default_project(self, db, git_repo):
        p1 = projects_mod.ensure_default_project(db, str(git_repo))
        p2 = projects_mod.ensure_default_project(db, "/elsewhere")
        assert p1.id == p2.id == "default"
        assert p2.repo_path == str(git_repo)

    def test_working_branch(self, db):
        project = projects_mod.set_working_branch(db, "demo", "develop")
        assert project.working_branch == "develop"
        assert projects_mod.set_working_branch(db, "demo", None).working_branch is None

    def test_resolve_project_dir(self, db, git_repo):
        task = tasks_mod.create_task(db, "X", "demo")
        assert projects_mod.resolve_project_dir(db, task) == str(git_repo)
        own = tasks_mod.create_task(db, "Y", "demo", project_dir="/srv/app")
        assert projects_mod.resolve_project_dir(db, own) == "/srv/app"
        orphan = tasks_mod.create_task(db, "Z")
        assert projects_mod.resolve_project_dir(db, orphan) == ""


class TestBranchRules:
    def test_add_list_remove(self, db):
        projects_mod.add_branch_rule(db, "demo", "main")
        projects_mod.add_branch_rule(db, "demo", "release/*")
        projects_mod.add_branch_rule(db, "demo", "main")
        assert projects_mod.protected_patterns(db, "demo") == ["main", "release/*"]
        assert projects_mod.remove_branch_rule(db, "demo", "main") is True
        assert projects_mod.remove_branch_rule(db, "demo", "main") is False
        assert projects_mod.protected_patterns(db, "demo") == ["release/*"]

    def test_unknown_project(self, db):
        with pytest.raises(ValueError, match="Project not found"):
            projects_mod.add_branch_rule(db, "ghost", "main")

    def test_no_project(self, db):
        assert projects_mod.protected_patterns(db, None) == []


class TestAttachments:
    def test_attachments_loaded_with_task(self, db):
        task = tasks_mod.create_task(db, "X", "demo")
        projects_mod.add_attachment(db, task.id, "shot.png", "/tmp/shot.png", "image/png")
        projects_mod.add_attachment(db, task.id, "demo.mp4", "/tmp/demo.mp4", "video/mp4")
        task = tasks_mod.get_task(db, task.id)
        assert [a.filename for a in task.attachments] == ["shot.png", "demo.mp4"]
        assert task.attachments[0].mime_type == "image/png"
