"""Tests for agent briefs and the event hub."""

from agent_forge.core.briefs import build_brief, build_conflict_brief, build_continuation_brief
from agent_forge.core.events import EventHub
from agent_forge.db.models import Attachment, Task


def sample_task(**kwargs):
    defaults = dict(
        id="abc123",
        title="Fix login",
        description="Login fails on Safari",
        acceptance_criteria="Users can log in",
        max_iterations=7,
        working_branch="forge/abc123-fix-login",
    )
    defaults.update(kwargs)
    return Task(**defaults)


class TestBuildBrief:
    def test_sections(self):
        brief = build_brief(sample_task(), [])
        assert brief.startswith("# Task: Fix login\n")
        assert "## Description\n\nLogin fails on Safari" in brief
        assert "## Acceptance Criteria\n\nUsers can log in" in brief
        assert "`[SUCCESS]`" in brief
        assert "Maximum iterations allowed: 7" in brief
        assert "Git Branch Rules" not in brief

    def test_empty_sections_omitted(self):
        brief = build_brief(sample_task(description="", acceptance_criteria=""), [])
        assert "## Description" not in brief
        assert "## Acceptance Criteria" not in brief

    def test_protected_branches(self):
        brief = build_brief(sample_task(), ["main", "release/*"])
        assert "Current branch: forge/abc123-fix-login" in brief
        assert "- main\n- release/*" in brief
        assert "create a feature branch first" in brief

    def test_attachments(self):
        attachments = [
            Attachment(filename="shot.png", mime_type="image/png", path="/tmp/shot.png"),
            Attachment(filename="demo.mp4", mime_type="video/mp4", path="/tmp/demo.mp4"),
            Attachment(filename="notes.txt", mime_type="text/plain", path="/tmp/notes.txt"),
        ]
        brief = build_brief(sample_task(), [], attachments)
        assert "- Screenshot: shot.png (Path: /tmp/shot.png)" in brief
        assert "- Video: demo.mp4" in brief
        assert "- File: notes.txt" in brief


class TestContinuationBrief:
    def test_with_feedback(self):
        brief = build_continuation_brief(sample_task(), ["main"], feedback="  Add tests  ")
        assert brief.startswith("# Continuing Task: Fix login")
        assert "## User Feedback\n\nAdd tests" in brief
        assert "based on the user's feedback" in brief
        assert "create a feature branch first" not in brief

    def test_without_feedback(self):
        brief = build_continuation_brief(sample_task(), [])
        assert "User Feedback" not in brief
        assert "Continue working on this task." in brief


class TestConflictBrief:
    def test_lists_files(self):
        brief = build_conflict_brief(sample_task(), "develop", ["a.py", "b.py"])
        assert "`forge/abc123-fix-login`" in brief
        assert "- a.py\n- b.py" in brief
        assert "Rebase onto `develop`" in brief

    def test_no_files(self):
        assert "git status" in build_conflict_brief(sample_task(), "main", [])


class TestEventHub:
    def test_fan_out(self):
        hub = EventHub()
        a, b = hub.subscribe(), hub.subscribe()
        hub.broadcast_status("t1", "review", 3)
        expected = {"type": "status", "task_id": "t1", "status": "review", "iteration": 3}
        assert a.get_nowait() == expected
        assert b.get_nowait() == expected

    def test_unsubscribe(self):
        hub = EventHub()
        q = hub.subscribe()
        hub.unsubscribe(q)
        hub.broadcast_log("t1", "x")
        assert q.empty()
        assert hub.subscriber_count == 0

    def test_slow_subscriber_dropped(self):
        hub = EventHub(maxsize=1)
        q = hub.subscribe()
        hub.broadcast_log("t1", "one")
        hub.broadcast_log("t1", "two")
        assert hub.subscriber_count == 0
        assert q.get_nowait()["message"] == "one"

    def test_task_snapshot_excludes_logs(self):
        hub = EventHub()
        q = hub.subscribe()
        hub.broadcast_task(sample_task(logs="lots of output"))
        hub.broadcast_task(None)
        msg = q.get_nowait()
        assert msg["type"] == "task_updated"
        assert "logs" not in msg["task"]
        assert q.empty()
