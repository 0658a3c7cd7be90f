"""The board: tasks in buckets plus the eight playbook slots.

``Board`` owns the in-memory state and is the only write surface. Every
mutator takes the board lock, validates, writes through to SQLite in a single
transaction and only then applies the change in memory, so a task id is
always in exactly one place: the bucket list or one slot.
"""

import copy
import logging
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime

from daily_playbook.core import slots as slots_mod
from daily_playbook.core import tasks as tasks_mod
from daily_playbook.core import timer
from daily_playbook.core.sync import merge_slot, should_persist_tick
from daily_playbook.db.engine import init_db, transaction
from daily_playbook.db.models import BUCKET_IDS, PRIORITIES, SLOT_COUNT, PlaybookSlot, Task
from daily_playbook.errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)


class Board:
    def __init__(
        self,
        db: sqlite3.Connection,
        user_id: str = "local",
        today: Callable[[], date] = date.today,
        persist_every: int = 10,
    ):
        self.db = db
        self.user_id = user_id
        self.today = today
        self.persist_every = persist_every
        self.tasks: list[Task] = []
        self.slots: list[PlaybookSlot] = slots_mod.empty_slots()
        self.playbook_date = today()
        self.chat_open = False
        self._lock = threading.RLock()
        self._log_listeners: list[Callable[[int], None]] = []
        # slot number -> revision of the stored row as this board last wrote or read it
        self._revisions: dict[int, int] = {}
        self.reload()

    @classmethod
    def open(cls, config) -> "Board":
        """Open a board on the configured database, usable from any thread."""
        db = init_db(config.db_path, check_same_thread=False)
        return cls(db, user_id=config.user_id, persist_every=config.persist_every)

    def close(self):
        with self._lock:
            self.db.close()

    # ── Reads ─────────────────────────────────────────────────────────────────

    def snapshot(self) -> tuple[list[Task], list[PlaybookSlot]]:
        """Copies of the bucket list and the slots, taken together."""
        with self._lock:
            return copy.deepcopy(self.tasks), copy.deepcopy(self.slots)

    def find_task(self, task_id: str) -> Task | None:
        with self._lock:
            for task in self.tasks:
                if task.id == task_id:
                    return copy.deepcopy(task)
            for slot in self.slots:
                if slot.task is not None and slot.task.id == task_id:
                    return copy.deepcopy(slot.task)
        return None

    def slot_of(self, task_id: str) -> int | None:
        with self._lock:
            for slot in self.slots:
                if slot.task is not None and slot.task.id == task_id:
                    return slot.slot_number
        return None

    def get_slot(self, slot_number: int) -> PlaybookSlot:
        with self._lock:
            return copy.deepcopy(self._slot(slot_number))

    def tasks_in_bucket(self, bucket_id: str, column: str | None = None) -> list[Task]:
        """Bucket-list tasks of one bucket, highest priority first."""
        tasks_mod.check_bucket(bucket_id)
        if column is not None:
            tasks_mod.check_column(column)
        rank = {p: i for i, p in enumerate(reversed(PRIORITIES))}
        with self._lock:
            found = [
                t for t in self.tasks
                if t.bucket_id == bucket_id and (column is None or t.column == column)
            ]
            found.sort(key=lambda t: (rank[t.priority], t.created_at or datetime.min))
            return copy.deepcopy(found)

    def focus_slot(self) -> PlaybookSlot | None:
        """The highlighted slot: first running, else first paused."""
        with self._lock:
            for state in ("running", "paused"):
                for slot in self.slots:
                    if slot.timer_state == state and slot.task is not None:
                        return copy.deepcopy(slot)
        return None

    @property
    def pending_logs(self) -> list[int]:
        """Slots waiting for a status log."""
        with self._lock:
            return [s.slot_number for s in self.slots if s.timer_state == "logging"]

    def context(self) -> dict:
        """Board snapshot handed to the assistant."""
        with self._lock:
            buckets = {
                bucket_id: [
                    {"id": t.id, "title": t.title, "priority": t.priority, "column": t.column}
                    for t in self.tasks_in_bucket(bucket_id)
                ]
                for bucket_id in BUCKET_IDS
            }
            playbook = [
                {
                    "slot": s.slot_number,
                    "task_id": s.task.id,
                    "title": s.task.title,
                    "timer_state": s.timer_state,
                }
                for s in self.slots
                if s.task is not None
            ]
            empty = [s.slot_number for s in self.slots if s.task is None]
        return {"buckets": buckets, "playbook": playbook, "empty_slots": empty}

    def set_chat_open(self, is_open: bool):
        with self._lock:
            self.chat_open = bool(is_open)

    def on_log_required(self, callback: Callable[[int], None]):
        """Register a callback fired with the slot number that entered logging."""
        self._log_listeners.append(callback)

    # ── Reconcile ─────────────────────────────────────────────────────────────

    def reload(self):
        """Rebuild tasks and today's slots from the store."""
        with self._lock:
            today = self.today()
            same_day = today == self.playbook_date
            all_tasks = tasks_mod.list_tasks(self.db, self.user_id)
            by_id = {t.id: t for t in all_tasks}

            new_slots = slots_mod.empty_slots()
            if same_day:
                for fresh, old in zip(new_slots, self.slots):
                    fresh.sprint_duration = old.sprint_duration
                    fresh.time_remaining = old.sprint_duration

            staged: set[str] = set()
            revisions: dict[int, int] = {}
            for row in slots_mod.load_slot_rows(self.db, self.user_id, today):
                task = by_id.get(row["task_id"])
                if task is None:
                    continue
                if task.id in staged:
                    logger.warning(
                        "Task %s is stored in more than one slot; keeping the first",
                        task.id,
                    )
                    continue
                staged.add(task.id)
                remote = slots_mod.row_to_slot(row, task)
                index = remote.slot_number - 1
                if same_day:
                    moved = row["revision"] != self._revisions.get(remote.slot_number)
                    remote = merge_slot(self.slots[index], remote, written_elsewhere=moved)
                new_slots[index] = remote
                revisions[remote.slot_number] = row["revision"]

            self.tasks = [t for t in all_tasks if t.id not in staged]
            self.slots = new_slots
            self._revisions = revisions
            if not same_day:
                logger.info("New playbook day %s", today.isoformat())
            self.playbook_date = today

    @contextmanager
    def _write(self, what: str):
        """Durable write; on failure memory stays untouched and is re-synced."""
        try:
            with transaction(self.db):
                yield self.db
        except sqlite3.Error as e:
            logger.warning("Could not save %s: %s", what, e)
            try:
                self.reload()
            except sqlite3.Error:
                logger.exception("Reload after failed write also failed")
            raise StoreError(f"Could not save {what}: {e}") from e

    # ── Tasks ─────────────────────────────────────────────────────────────────

    def add_task(
        self,
        bucket_id: str,
        title: str,
        notes: str = "",
        priority: str = "medium",
        subtasks: list[str] | None = None,
        links: list[tuple[str, str]] | None = None,
    ) -> Task:
        """Create a task in the todo column of a bucket."""
        with self._lock:
            with self._write("task"):
                task = tasks_mod.create_task(
                    self.db, title, bucket_id, self.user_id, notes, priority,
                    subtasks=subtasks, links=links,
                )
            self.tasks.append(task)
            logger.info("Created task %s in %s", task.id, bucket_id)
            return copy.deepcopy(task)

    def update_task(self, task_id: str, **fields) -> Task:
        """Change title, notes, priority, bucket or column wherever the task is."""
        with self._lock:
            _, slot = self._locate(task_id)
            if slot is not None and fields.get("column") not in (None, "in-progress"):
                raise ValidationError(
                    f"Task {task_id} is in slot {slot.slot_number}; "
                    "complete it or return it to its bucket instead"
                )
            with self._write("task"):
                updated = tasks_mod.update_task(self.db, task_id, **fields)
            self._put_task(updated, slot)
            return copy.deepcopy(updated)

    def rename_task(self, task_id: str, title: str) -> Task:
        return self.update_task(task_id, title=title)

    def set_priority(self, task_id: str, priority: str) -> Task:
        return self.update_task(task_id, priority=priority)

    def move_task_to_bucket(self, task_id: str, bucket_id: str) -> Task:
        return self.update_task(task_id, bucket_id=bucket_id)

    def mark_done(self, task_id: str) -> Task:
        """Finish a task: completes its slot when staged."""
        with self._lock:
            slot_number = self.slot_of(task_id)
            if slot_number is not None:
                return self.complete_slot(slot_number)
            return self.update_task(task_id, column="done")

    def delete_task(self, task_id: str) -> Task:
        """Delete a task from the bucket list or from the slot holding it."""
        with self._lock:
            task, slot = self._locate(task_id)
            with self._write("deletion"):
                tasks_mod.delete_task(self.db, task_id)
            if slot is not None:
                self.slots[slot.slot_number - 1] = timer.reset(slot)
            else:
                self.tasks = [t for t in self.tasks if t.id != task_id]
            logger.info("Deleted task %s", task_id)
            return copy.deepcopy(task)

    def add_log_entry(self, task_id: str, text: str) -> Task:
        with self._lock:
            _, slot = self._locate(task_id)
            with self._write("log entry"):
                tasks_mod.add_log_entry(self.db, task_id, text)
                updated = tasks_mod.get_task(self.db, task_id)
            self._put_task(updated, slot)
            return copy.deepcopy(updated)

    def edit_log_entry(self, task_id: str, entry_id: int, text: str) -> Task:
        with self._lock:
            _, slot = self._locate(task_id)
            with self._write("log entry"):
                entry = tasks_mod.update_log_entry(self.db, task_id, entry_id, text)
                if entry is None:
                    raise NotFoundError(f"Log entry not found: {entry_id}")
                updated = tasks_mod.get_task(self.db, task_id)
            self._put_task(updated, slot)
            return copy.deepcopy(updated)

    def add_subtask(self, task_id: str, text: str) -> Task:
        return self._edit_children(task_id, "subtask", tasks_mod.add_subtask, text)

    def toggle_subtask(self, task_id: str, subtask_id: int) -> Task:
        with self._lock:
            task, _ = self._locate(task_id)
            current = next((s for s in task.subtasks if s.id == subtask_id), None)
            if current is None:
                raise NotFoundError(f"Subtask not found: {subtask_id}")
            return self._edit_children(
                task_id, "subtask", tasks_mod.set_subtask_checked, subtask_id, not current.checked
            )

    def remove_subtask(self, task_id: str, subtask_id: int) -> Task:
        return self._edit_children(task_id, "subtask", tasks_mod.remove_subtask, subtask_id)

    def add_link(self, task_id: str, url: str, label: str = "") -> Task:
        return self._edit_children(task_id, "link", tasks_mod.add_link, url, label)

    def remove_link(self, task_id: str, link_id: int) -> Task:
        return self._edit_children(task_id, "link", tasks_mod.remove_link, link_id)

    def _edit_children(self, task_id: str, what: str, fn, *args) -> Task:
        with self._lock:
            _, slot = self._locate(task_id)
            with self._write(what):
                fn(self.db, task_id, *args)
                updated = tasks_mod.get_task(self.db, task_id)
            self._put_task(updated, slot)
            return copy.deepcopy(updated)

    # ── Slot occupancy ────────────────────────────────────────────────────────

    def move_task_to_slot(self, task_id: str, slot_number: int) -> bool:
        """Stage a bucket task into a slot. Returns False when the slot is taken."""
        with self._lock:
            slot = self._slot(slot_number)
            _, current = self._locate(task_id)
            if current is not None:
                raise ValidationError(
                    f"Task {task_id} is already in slot {current.slot_number}"
                )
            if slot.task is not None:
                logger.info("Slot %d is occupied; not staging %s", slot_number, task_id)
                return False
            with self._write("slot"):
                updated = tasks_mod.update_task(self.db, task_id, column="in-progress")
                staged = timer.stage(slot, updated)
                self._save_slot(staged)
            self.tasks = [t for t in self.tasks if t.id != task_id]
            self.slots[slot_number - 1] = staged
            logger.info("Staged %s into slot %d", task_id, slot_number)
            return True

    def move_slot_to_slot(self, from_slot: int, to_slot: int) -> bool:
        """Move a staged task to another slot, swapping when it is occupied.

        Timer state travels with each task.
        """
        with self._lock:
            src = self._slot(from_slot)
            dst = self._slot(to_slot)
            if from_slot == to_slot or src.task is None:
                return False
            new_dst = _carry(dst, src)
            new_src = _carry(src, dst) if dst.task is not None else timer.reset(src)
            with self._write("slot"):
                self._save_slot(new_src)
                self._save_slot(new_dst)
            self.slots[from_slot - 1] = new_src
            self.slots[to_slot - 1] = new_dst
            return True

    def complete_slot(self, slot_number: int) -> Task | None:
        """Mark the slot's task done and return it to the bucket list."""
        return self._release(slot_number, "done")

    def return_task_to_bucket(self, slot_number: int) -> Task | None:
        """Send the slot's task back to its bucket as todo."""
        return self._release(slot_number, "todo")

    def submit_status_log(self, slot_number: int, accomplished: str, next_step: str) -> Task:
        """Answer the status-log prompt: record progress and close the sprint."""
        with self._lock:
            slot = self._slot(slot_number)
            if slot.task is None or slot.timer_state != "logging":
                raise ValidationError(f"Slot {slot_number} is not waiting for a status log")
            accomplished = (accomplished or "").strip()
            next_step = (next_step or "").strip()
            if not accomplished or not next_step:
                raise ValidationError("Both what you accomplished and the next step are required")
            text = f"Accomplished: {accomplished}\nNext step: {next_step}"
            return self._release(slot_number, "done", log_text=text)

    def _release(self, slot_number: int, column: str, log_text: str | None = None) -> Task | None:
        with self._lock:
            slot = self._slot(slot_number)
            if slot.task is None:
                return None
            task_id = slot.task.id
            with self._write("slot"):
                if log_text:
                    tasks_mod.add_log_entry(self.db, task_id, log_text)
                updated = tasks_mod.update_task(self.db, task_id, column=column)
                self._save_slot(timer.reset(slot))
            self.slots[slot_number - 1] = timer.reset(slot)
            self.tasks.append(updated)
            logger.info("Slot %d released %s as %s", slot_number, task_id, column)
            return copy.deepcopy(updated)

    # ── Timer ─────────────────────────────────────────────────────────────────

    def start_slot(self, slot_number: int) -> PlaybookSlot:
        return self._retime(slot_number, timer.start)

    def pause_slot(self, slot_number: int) -> PlaybookSlot:
        return self._retime(slot_number, timer.pause)

    def set_slot_duration(self, slot_number: int, seconds: int) -> PlaybookSlot:
        return self._retime(slot_number, timer.set_duration, seconds, adjust=True)

    def apply_preset(self, slot_number: int, seconds: int) -> PlaybookSlot:
        return self._retime(slot_number, timer.apply_preset, seconds, adjust=True)

    def skip_slot(self, slot_number: int, delta: int) -> PlaybookSlot:
        return self._retime(slot_number, timer.skip, delta, adjust=True)

    def scrub_slot(self, slot_number: int, fraction: float) -> PlaybookSlot:
        return self._retime(slot_number, timer.scrub, fraction, adjust=True)

    def _retime(self, slot_number: int, fn, *args, adjust: bool = False) -> PlaybookSlot:
        with self._lock:
            slot = self._slot(slot_number)
            if adjust and slot.timer_state == "logging":
                raise ValidationError(f"Slot {slot_number} is waiting for a status log")
            new = fn(slot, *args)
            if new is slot:
                return copy.deepcopy(slot)
            if new.task is not None:
                with self._write("timer"):
                    self._save_slot(new)
            self.slots[slot_number - 1] = new
            if new.timer_state != slot.timer_state:
                logger.info("Slot %d %s -> %s", slot_number, slot.timer_state, new.timer_state)
            return copy.deepcopy(new)

    def tick(self) -> list[int]:
        """Advance every running slot by one second.

        Returns the slots that entered logging on this tick.
        """
        entered = []
        with self._lock:
            if self.today() != self.playbook_date:
                self.reload()
            for index, slot in enumerate(self.slots):
                if slot.timer_state != "running":
                    continue
                new, crossed = timer.tick(slot)
                if should_persist_tick(slot, new, self.persist_every):
                    try:
                        with transaction(self.db):
                            self._save_slot(new)
                    except sqlite3.Error:
                        logger.exception("Could not persist tick for slot %d", slot.slot_number)
                self.slots[index] = new
                if crossed:
                    logger.info(
                        "Slot %d needs a status log (%ds left)",
                        slot.slot_number, new.time_remaining,
                    )
                    entered.append(slot.slot_number)

        for slot_number in entered:
            for callback in self._log_listeners:
                try:
                    callback(slot_number)
                except Exception:
                    logger.exception("Status-log listener failed for slot %d", slot_number)
        return entered

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _slot(self, slot_number) -> PlaybookSlot:
        if not isinstance(slot_number, int) or not 1 <= slot_number <= SLOT_COUNT:
            raise ValidationError(f"Slot number must be 1-{SLOT_COUNT}, got {slot_number!r}")
        return self.slots[slot_number - 1]

    def _save_slot(self, slot: PlaybookSlot):
        revision = slots_mod.save_slot(self.db, self.user_id, self.playbook_date, slot)
        if revision is None:
            self._revisions.pop(slot.slot_number, None)
        else:
            self._revisions[slot.slot_number] = revision

    def _locate(self, task_id: str) -> tuple[Task, PlaybookSlot | None]:
        for task in self.tasks:
            if task.id == task_id:
                return task, None
        for slot in self.slots:
            if slot.task is not None and slot.task.id == task_id:
                return slot.task, slot
        raise NotFoundError(f"Task not found: {task_id}")

    def _put_task(self, task: Task, slot: PlaybookSlot | None):
        if slot is not None:
            self.slots[slot.slot_number - 1] = replace(slot, task=task)
        else:
            self.tasks = [task if t.id == task.id else t for t in self.tasks]


def _carry(target: PlaybookSlot, source: PlaybookSlot) -> PlaybookSlot:
    """``target`` slot holding ``source``'s task and timer."""
    return replace(
        target,
        task=source.task,
        timer_state=source.timer_state,
        time_remaining=source.time_remaining,
        sprint_duration=source.sprint_duration,
    )
