"""Tests for the single-lane queue and its advancement worker."""

import threading
from unittest.mock import patch

import pytest

from agent_forge.core import tasks as tasks_mod
from agent_forge.core.events import EventHub
from agent_forge.core.queue import QueueError, QueueScheduler, list_queue
from agent_forge.core.supervisor import ActiveTaskConflict, AgentSupervisor
from agent_forge.db.models import BACKLOG, BLOCKED, DONE, PROGRESS, QUEUED, REVIEW

from conftest import SLEEPY_AGENT, STUBBORN_AGENT, SUCCESS_AGENT, wait_until


@pytest.fixture
def scheduler(db, config):
    hub = EventHub()
    supervisor = AgentSupervisor(db, config, hub=hub)
    sched = QueueScheduler(db, supervisor, config, hub=hub)
    supervisor.on_process_exit = sched.notify_completion
    yield sched
    sched.stop()
    supervisor.stop_all()
    wait_until(lambda: not supervisor.busy)


def positions(db):
    return [(t.title, t.queue_position) for t in list_queue(db)]


class TestQueueOrdering:
    def test_enqueue_appends(self, db, scheduler):
        for title in ("A", "B", "C"):
            task = tasks_mod.create_task(db, title, "demo")
            scheduler.enqueue(task.id)
        assert positions(db) == [("A", 1), ("B", 2), ("C", 3)]
        assert all(t.status == QUEUED for t in list_queue(db))

    def test_remove_closes_gap(self, db, scheduler):
        ids = []
        for title in ("A", "B", "C"):
            task = tasks_mod.create_task(db, title, "demo")
            scheduler.enqueue(task.id)
            ids.append(task.id)
        removed = scheduler.remove(ids[1])
        assert removed.status == BACKLOG
        assert removed.queue_position == 0
        assert positions(db) == [("A", 1), ("C", 2)]

    def test_enqueue_is_idempotent(self, db, scheduler):
        task = tasks_mod.create_task(db, "A", "demo")
        scheduler.enqueue(task.id)
        again = scheduler.enqueue(task.id)
        assert again.queue_position == 1
        assert len(list_queue(db)) == 1

    def test_requeue_goes_to_the_end(self, db, scheduler):
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(a.id)
        scheduler.enqueue(b.id)
        scheduler.remove(a.id)
        scheduler.enqueue(a.id)
        assert positions(db) == [("B", 1), ("A", 2)]

    def test_enqueue_in_progress_rejected(self, db, scheduler):
        task = tasks_mod.create_task(db, "A", "demo")
        tasks_mod.update_task_status(db, task.id, PROGRESS)
        with pytest.raises(QueueError):
            scheduler.enqueue(task.id)

    def test_enqueue_missing(self, scheduler):
        with pytest.raises(ValueError, match="Task not found"):
            scheduler.enqueue("missing")

    def test_remove_unqueued_is_noop(self, db, scheduler):
        task = tasks_mod.create_task(db, "A", "demo")
        assert scheduler.remove(task.id).status == BACKLOG

    def test_dequeue_next_peeks_head(self, db, scheduler):
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(b.id)
        scheduler.enqueue(a.id)
        assert scheduler.dequeue_next().id == b.id

    def test_positions_contiguous_across_mixed_operations(self, db, scheduler):
        ids = {}
        for title in ("A", "B", "C", "D", "E"):
            ids[title] = tasks_mod.create_task(db, title, "demo").id
            scheduler.enqueue(ids[title])

        scheduler.remove(ids["B"])
        assert positions(db) == [("A", 1), ("C", 2), ("D", 3), ("E", 4)]
        scheduler.move(ids["D"], REVIEW)
        assert positions(db) == [("A", 1), ("C", 2), ("E", 3)]
        scheduler.enqueue(ids["B"])
        tasks_mod.update_task_status(db, ids["C"], BLOCKED)
        assert positions(db) == [("A", 1), ("E", 2), ("B", 3)]
        tasks_mod.delete_task(db, ids["A"])
        assert positions(db) == [("E", 1), ("B", 2)]
        scheduler.enqueue(ids["D"])
        assert positions(db) == [("E", 1), ("B", 2), ("D", 3)]
        assert tasks_mod.get_task(db, ids["C"]).queue_position == 0

    def test_concurrent_enqueue(self, db, scheduler):
        ids = [tasks_mod.create_task(db, f"T{i}", "demo").id for i in range(8)]
        threads = [threading.Thread(target=scheduler.enqueue, args=(task_id,)) for task_id in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        queued = list_queue(db)
        assert sorted(t.id for t in queued) == sorted(ids)
        assert [t.queue_position for t in queued] == list(range(1, 9))

    def test_continue_on_queued_task_closes_gap(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(a.id)
        scheduler.enqueue(b.id)

        task = scheduler.supervisor.continue_task(a.id, "Pick up the review notes")
        assert task.status == PROGRESS
        assert task.queue_position == 0
        assert positions(db) == [("B", 1)]

        c = tasks_mod.create_task(db, "C", "demo")
        scheduler.enqueue(c.id)
        assert positions(db) == [("B", 1), ("C", 2)]


class TestAdvance:
    def test_starts_head_of_queue(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(a.id)
        scheduler.enqueue(b.id)

        started = scheduler.try_advance()
        assert started.id == a.id
        assert started.status == PROGRESS
        assert started.queue_position == 0
        assert started.working_branch.startswith("forge/")
        assert started.rollback_tag
        assert positions(db) == [("B", 1)]

    def test_single_active_task(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        for title in ("A", "B"):
            scheduler.enqueue(tasks_mod.create_task(db, title, "demo").id)
        scheduler.try_advance()
        assert scheduler.try_advance() is None
        assert len(tasks_mod.list_tasks(db, status=PROGRESS)) == 1

    def test_empty_queue(self, scheduler):
        assert scheduler.try_advance() is None

    def test_skips_unstartable_task(self, db, config, scheduler, make_agent, tmp):
        config.agent_command = make_agent(SLEEPY_AGENT)
        bad = tasks_mod.create_task(db, "Bad", "demo", project_dir=str(tmp / "gone"))
        good = tasks_mod.create_task(db, "Good", "demo")
        scheduler.enqueue(bad.id)
        scheduler.enqueue(good.id)

        started = scheduler.try_advance()
        assert started.id == good.id
        bad = tasks_mod.get_task(db, bad.id)
        assert bad.status == BLOCKED
        assert "does not exist" in bad.error

    def test_worker_drains_queue(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SUCCESS_AGENT)
        scheduler.start()
        ids = []
        for title in ("First", "Second", "Third"):
            task = tasks_mod.create_task(db, title, "demo")
            scheduler.enqueue(task.id)
            ids.append(task.id)

        assert scheduler.wait_idle(timeout=30)
        tasks = [tasks_mod.get_task(db, i) for i in ids]
        assert [t.status for t in tasks] == [REVIEW, REVIEW, REVIEW]
        assert len({t.working_branch for t in tasks}) == 3
        assert list_queue(db) == []

    def test_continue_message_used_once(self, db, config, scheduler, make_agent, tmp):
        out = tmp / "brief.txt"
        config.agent_command = make_agent(f"""
            cat > "{out}"
            echo "[SUCCESS]"
        """)
        scheduler.start()
        task = tasks_mod.create_task(db, "A", "demo")
        scheduler.enqueue(task.id, continue_message="Address review comments")
        assert scheduler.wait_idle(timeout=15)
        assert "Address review comments" in out.read_text()
        assert tasks_mod.get_task(db, task.id).continue_message is None

    def test_stopped_process_holds_slot_until_exit(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(STUBBORN_AGENT)
        scheduler.start()
        a = tasks_mod.create_task(db, "A", "demo")
        scheduler.enqueue(a.id)
        assert wait_until(lambda: tasks_mod.get_task(db, a.id).current_iteration == 1)

        config.agent_command = make_agent(SUCCESS_AGENT)
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.move(a.id, BACKLOG)
        scheduler.enqueue(b.id)

        # A ignores SIGTERM and is only gone once the kill timeout fires
        assert not scheduler.supervisor.is_running(a.id)
        assert scheduler.supervisor.running_count() == 1
        assert scheduler.try_advance() is None
        assert tasks_mod.get_task(db, b.id).status == QUEUED

        assert scheduler.wait_idle(timeout=20)
        assert tasks_mod.get_task(db, b.id).status == REVIEW
        assert tasks_mod.get_task(db, a.id).status == BACKLOG

    def test_lost_slot_returns_task_to_head(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(a.id)
        scheduler.enqueue(b.id)

        conflict = ActiveTaskConflict("Task other is already in progress")
        with patch.object(scheduler.supervisor, "start", side_effect=conflict):
            assert scheduler.try_advance() is None

        a = tasks_mod.get_task(db, a.id)
        assert a.status == QUEUED
        assert not a.error
        assert positions(db) == [("A", 1), ("B", 2)]


class TestMove:
    def test_move_to_queued_and_back(self, db, scheduler):
        task = tasks_mod.create_task(db, "A", "demo")
        assert scheduler.move(task.id, QUEUED).queue_position == 1
        moved = scheduler.move(task.id, BACKLOG)
        assert moved.status == BACKLOG
        assert moved.queue_position == 0

    def test_move_running_task_stops_it(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        task = tasks_mod.create_task(db, "A", "demo")
        scheduler.enqueue(task.id)
        scheduler.try_advance()
        assert scheduler.supervisor.is_running(task.id)

        moved = scheduler.move(task.id, DONE)
        assert moved.status == DONE
        assert moved.rollback_tag is None
        assert not scheduler.supervisor.is_running(task.id)

    def test_move_to_progress_when_busy_queues(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.move(a.id, PROGRESS)
        assert scheduler.supervisor.is_running(a.id)
        moved = scheduler.move(b.id, PROGRESS)
        assert moved.status == QUEUED

    def test_move_to_progress_races_advance(self, db, config, scheduler, make_agent):
        config.agent_command = make_agent(SLEEPY_AGENT)
        a = tasks_mod.create_task(db, "A", "demo")
        b = tasks_mod.create_task(db, "B", "demo")
        scheduler.enqueue(b.id)

        threads = [
            threading.Thread(target=scheduler.move, args=(a.id, PROGRESS)),
            threading.Thread(target=scheduler.try_advance),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=15)

        statuses = sorted(tasks_mod.get_task(db, i).status for i in (a.id, b.id))
        assert statuses == sorted([PROGRESS, QUEUED])
        assert scheduler.supervisor.running_count() == 1

    def test_invalid_status(self, db, scheduler):
        task = tasks_mod.create_task(db, "A", "demo")
        with pytest.raises(ValueError, match="Invalid status"):
            scheduler.move(task.id, "archived")
