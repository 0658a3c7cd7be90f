"""Tests for the board: location invariant, slot occupancy, timers."""

import sqlite3
import tempfile
from datetime import date, timedelta
from pathlib import Path
from unittest import mock

import pytest

from daily_playbook.core import slots as slots_mod
from daily_playbook.core.board import Board
from daily_playbook.db.engine import init_db
from daily_playbook.db.models import PlaybookSlot
from daily_playbook.errors import NotFoundError, StoreError, ValidationError

DAY = date(2026, 3, 2)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def board(db_path):
    conn = init_db(db_path)
    b = Board(conn, today=lambda: DAY)
    yield b
    b.close()


def _assert_located_once(board: Board):
    tasks, slots = board.snapshot()
    ids = [t.id for t in tasks] + [s.task.id for s in slots if s.task]
    assert len(ids) == len(set(ids))


class TestTasks:
    def test_add_and_find(self, board):
        task = board.add_task("finance", "Pay invoices", priority="high")
        assert board.find_task(task.id).priority == "high"
        assert [t.id for t in board.tasks_in_bucket("finance")] == [task.id]

    def test_empty_title_writes_nothing(self, board):
        with pytest.raises(ValidationError):
            board.add_task("finance", "   ")
        assert board.snapshot()[0] == []
        assert board.db.execute("SELECT COUNT(*) FROM tasks").fetchone()[0] == 0

    def test_bucket_ordering(self, board):
        board.add_task("ads", "Low", priority="low")
        board.add_task("ads", "High", priority="high")
        assert [t.title for t in board.tasks_in_bucket("ads")] == ["High", "Low"]

    def test_unknown_task(self, board):
        with pytest.raises(NotFoundError):
            board.rename_task("ghost", "Boo")

    def test_rename_staged_task_updates_slot(self, board):
        task = board.add_task("content", "Draft post")
        board.move_task_to_slot(task.id, 2)
        board.rename_task(task.id, "Publish post")
        assert board.get_slot(2).task.title == "Publish post"

    def test_staged_task_cannot_change_column(self, board):
        task = board.add_task("content", "Draft post")
        board.move_task_to_slot(task.id, 2)
        with pytest.raises(ValidationError):
            board.update_task(task.id, column="todo")

    def test_returned_copies_are_detached(self, board):
        task = board.add_task("finance", "Pay invoices")
        task.title = "mutated"
        assert board.find_task("pay-invoices").title == "Pay invoices"

    def test_log_entries_and_subtasks(self, board):
        task = board.add_task("product", "Ship beta", subtasks=["tests"])
        board.add_log_entry(task.id, "halfway")
        toggled = board.toggle_subtask(task.id, task.subtasks[0].id)
        assert toggled.subtasks[0].checked
        assert [e.text for e in toggled.log_entries] == ["halfway"]
        edited = board.edit_log_entry(task.id, toggled.log_entries[0].id, "nearly there")
        assert edited.log_entries[0].text == "nearly there"

    def test_edit_missing_log_entry(self, board):
        task = board.add_task("product", "Ship beta")
        with pytest.raises(NotFoundError):
            board.edit_log_entry(task.id, 42, "x")

    def test_mark_done_releases_slot(self, board):
        task = board.add_task("admin", "File taxes")
        board.move_task_to_slot(task.id, 1)
        done = board.mark_done(task.id)
        assert done.column == "done"
        assert board.get_slot(1).task is None


class TestOccupancy:
    def test_eight_slots(self, board):
        _, slots = board.snapshot()
        assert [s.slot_number for s in slots] == list(range(1, 9))

    def test_stage_moves_task_out_of_bucket(self, board):
        task = board.add_task("finance", "Pay invoices")
        assert board.move_task_to_slot(task.id, 3)
        slot = board.get_slot(3)
        assert slot.task.id == task.id
        assert slot.task.column == "in-progress"
        assert slot.timer_state == "idle"
        assert slot.time_remaining == slot.sprint_duration
        assert board.tasks_in_bucket("finance") == []
        _assert_located_once(board)

    def test_stage_into_occupied_slot(self, board):
        a = board.add_task("finance", "A")
        b = board.add_task("finance", "B")
        board.move_task_to_slot(a.id, 1)
        assert not board.move_task_to_slot(b.id, 1)
        assert board.get_slot(1).task.id == a.id
        assert [t.id for t in board.tasks_in_bucket("finance")] == [b.id]

    def test_stage_already_staged_task(self, board):
        a = board.add_task("finance", "A")
        board.move_task_to_slot(a.id, 1)
        with pytest.raises(ValidationError):
            board.move_task_to_slot(a.id, 2)

    @pytest.mark.parametrize("n", [0, 9, "3"])
    def test_invalid_slot_number(self, board, n):
        a = board.add_task("finance", "A")
        with pytest.raises(ValidationError):
            board.move_task_to_slot(a.id, n)

    def test_stage_then_return_round_trip(self, board):
        task = board.add_task("website", "Fix footer", priority="high")
        board.move_task_to_slot(task.id, 5)
        returned = board.return_task_to_bucket(5)
        assert returned.column == "todo"
        assert returned.bucket_id == "website"
        assert returned.priority == "high"
        assert board.get_slot(5).task is None
        assert [t.id for t in board.tasks_in_bucket("website")] == [task.id]

    def test_swap_carries_timers(self, board):
        a = board.add_task("music", "A")
        b = board.add_task("music", "B")
        board.move_task_to_slot(a.id, 1)
        board.move_task_to_slot(b.id, 2)
        board.start_slot(1)
        board.tick()
        board.set_slot_duration(2, 1200)

        assert board.move_slot_to_slot(1, 2)
        one, two = board.get_slot(1), board.get_slot(2)
        assert (one.task.id, one.timer_state, one.time_remaining) == (b.id, "idle", 1200)
        assert (two.task.id, two.timer_state, two.time_remaining) == (a.id, "running", 3599)
        _assert_located_once(board)

    def test_move_to_empty_slot(self, board):
        a = board.add_task("music", "A")
        board.move_task_to_slot(a.id, 1)
        assert board.move_slot_to_slot(1, 8)
        assert board.get_slot(1).task is None
        assert board.get_slot(8).task.id == a.id

    def test_move_empty_slot_is_noop(self, board):
        assert not board.move_slot_to_slot(1, 2)

    def test_delete_staged_task(self, board):
        task = board.add_task("ads", "Launch campaign")
        board.move_task_to_slot(task.id, 4)
        board.start_slot(4)
        board.delete_task(task.id)
        slot = board.get_slot(4)
        assert slot.task is None
        assert slot.timer_state == "idle"
        assert board.find_task(task.id) is None
        assert board.db.execute("SELECT COUNT(*) FROM playbook_slots").fetchone()[0] == 0

    def test_focus_slot(self, board):
        a = board.add_task("finance", "A")
        b = board.add_task("finance", "B")
        board.move_task_to_slot(a.id, 1)
        board.move_task_to_slot(b.id, 2)
        assert board.focus_slot() is None
        board.start_slot(1)
        board.pause_slot(1)
        board.start_slot(2)
        assert board.focus_slot().slot_number == 2
        board.pause_slot(2)
        assert board.focus_slot().slot_number == 1


class TestTimers:
    def test_full_sprint_scenario(self, board):
        task = board.add_task("finance", "Reconcile accounts")
        board.move_task_to_slot(task.id, 1)
        board.start_slot(1)
        seen = []
        board.on_log_required(seen.append)

        sprint = board.get_slot(1).sprint_duration
        for _ in range(sprint - 300 - 1):
            assert board.tick() == []
        assert board.tick() == [1]
        assert seen == [1]
        assert board.get_slot(1).timer_state == "logging"
        assert board.pending_logs == [1]

        done = board.submit_status_log(1, "matched March", "chase April receipts")
        assert done.column == "done"
        assert done.log_entries[-1].text == (
            "Accomplished: matched March\nNext step: chase April receipts"
        )
        assert board.get_slot(1).task is None
        assert [t.id for t in board.tasks_in_bucket("finance", "done")] == [task.id]

    def test_tick_when_nothing_runs(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        before = board.snapshot()
        assert board.tick() == []
        assert board.snapshot() == before

    def test_logging_fires_once(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        board.set_slot_duration(1, 301)
        board.start_slot(1)
        assert board.tick() == [1]
        assert board.tick() == []
        assert board.get_slot(1).time_remaining == 300

    def test_status_log_requires_both_fields(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        board.set_slot_duration(1, 301)
        board.start_slot(1)
        board.tick()
        with pytest.raises(ValidationError):
            board.submit_status_log(1, "did things", " ")
        assert board.get_slot(1).timer_state == "logging"

    def test_status_log_needs_logging_state(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        with pytest.raises(ValidationError):
            board.submit_status_log(1, "a", "b")

    def test_adjustments_rejected_while_logging(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        board.set_slot_duration(1, 301)
        board.start_slot(1)
        board.tick()
        with pytest.raises(ValidationError):
            board.skip_slot(1, 60)

    def test_preset_on_empty_slot_applies_to_next_task(self, board):
        board.apply_preset(3, 25 * 60)
        task = board.add_task("content", "Edit video")
        board.move_task_to_slot(task.id, 3)
        assert board.get_slot(3).time_remaining == 1500

    def test_timer_state_persists(self, board, db_path):
        task = board.add_task("content", "Edit video")
        board.move_task_to_slot(task.id, 3)
        board.scrub_slot(3, 0.5)
        board.start_slot(3)
        other = Board(init_db(db_path), today=lambda: DAY)
        slot = other.get_slot(3)
        assert (slot.task.id, slot.timer_state, slot.time_remaining) == (task.id, "running", 1800)
        other.close()


class TestReload:
    def test_reload_preserves_invariant(self, board, db_path):
        a = board.add_task("finance", "A")
        board.add_task("finance", "B")
        board.move_task_to_slot(a.id, 6)
        other = Board(init_db(db_path), today=lambda: DAY)
        assert other.get_slot(6).task.id == a.id
        assert [t.title for t in other.tasks_in_bucket("finance")] == ["B"]
        _assert_located_once(other)
        other.close()

    def test_duplicate_slot_rows_keep_first(self, board):
        a = board.add_task("finance", "A")
        task = board.find_task(a.id)
        slots_mod.save_slot(board.db, "local", DAY, PlaybookSlot(2, task=task))
        slots_mod.save_slot(board.db, "local", DAY, PlaybookSlot(5, task=task))
        board.db.commit()
        board.reload()
        assert board.get_slot(2).task.id == a.id
        assert board.get_slot(5).task is None
        _assert_located_once(board)

    def test_slots_are_date_scoped(self, board, db_path):
        a = board.add_task("finance", "A")
        board.move_task_to_slot(a.id, 1)
        tomorrow = Board(init_db(db_path), today=lambda: DAY + timedelta(days=1))
        assert tomorrow.get_slot(1).task is None
        assert tomorrow.find_task(a.id) is not None
        tomorrow.close()

    def test_day_rollover_on_tick(self, db_path):
        day = [DAY]
        board = Board(init_db(db_path), today=lambda: day[0])
        a = board.add_task("finance", "A")
        board.move_task_to_slot(a.id, 1)
        board.start_slot(1)
        day[0] = DAY + timedelta(days=1)
        board.tick()
        assert board.playbook_date == day[0]
        assert board.get_slot(1).task is None
        assert board.find_task(a.id) is not None
        board.close()


class TestWriteFailures:
    def test_failed_rename_leaves_memory(self, board):
        task = board.add_task("finance", "Pay invoices")
        err = sqlite3.OperationalError("disk I/O error")
        with mock.patch("daily_playbook.core.tasks.update_task", side_effect=err):
            with pytest.raises(StoreError):
                board.rename_task(task.id, "Pay all invoices")
        assert board.find_task(task.id).title == "Pay invoices"

    def test_failed_stage_rolls_back(self, board):
        task = board.add_task("finance", "Pay invoices")
        err = sqlite3.OperationalError("database is locked")
        with mock.patch("daily_playbook.core.slots.save_slot", side_effect=err):
            with pytest.raises(StoreError):
                board.move_task_to_slot(task.id, 1)
        assert board.get_slot(1).task is None
        assert board.find_task(task.id).column == "todo"
        board.reload()
        assert board.get_slot(1).task is None
        assert board.find_task(task.id).column == "todo"

    def test_failed_tick_write_keeps_counting(self, board):
        task = board.add_task("finance", "A")
        board.move_task_to_slot(task.id, 1)
        board.set_slot_duration(1, 1001)
        board.start_slot(1)
        err = sqlite3.OperationalError("disk I/O error")
        with mock.patch("daily_playbook.core.slots.save_slot", side_effect=err):
            board.tick()
        assert board.get_slot(1).time_remaining == 1000
