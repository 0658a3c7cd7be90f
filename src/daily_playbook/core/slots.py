"""Playbook slot rows, keyed by (user, slot number, date).

A row exists only while its slot holds a task. Like ``core.tasks`` these
functions never commit.
"""

import sqlite3
from datetime import date

from daily_playbook.db.models import DEFAULT_SPRINT_SECONDS, SLOT_COUNT, PlaybookSlot


def empty_slots() -> list[PlaybookSlot]:
    return [PlaybookSlot(slot_number=n) for n in range(1, SLOT_COUNT + 1)]


def load_slot_rows(
    db: sqlite3.Connection, user_id: str, playbook_date: date
) -> list[sqlite3.Row]:
    """Today's occupied slot rows, ordered by slot number."""
    return db.execute(
        """SELECT * FROM playbook_slots
           WHERE user_id = ? AND playbook_date = ?
           ORDER BY slot_number""",
        (user_id, playbook_date.isoformat()),
    ).fetchall()


def save_slot(
    db: sqlite3.Connection, user_id: str, playbook_date: date, slot: PlaybookSlot
) -> int | None:
    """Upsert the row for an occupied slot, or delete it when the slot is empty.

    Each upsert stamps the row with the current head of ``change_log``, which
    only grows, so two writes never share a revision. Returns that revision,
    or None when the row was deleted.
    """
    if slot.task is None:
        clear_slot(db, user_id, playbook_date, slot.slot_number)
        return None
    db.execute(
        """INSERT INTO playbook_slots
               (user_id, slot_number, task_id, timer_state, time_remaining,
                sprint_duration, playbook_date, revision)
           VALUES (?, ?, ?, ?, ?, ?, ?, (SELECT COALESCE(MAX(id), 0) FROM change_log))
           ON CONFLICT (user_id, slot_number, playbook_date) DO UPDATE SET
               task_id = excluded.task_id,
               timer_state = excluded.timer_state,
               time_remaining = excluded.time_remaining,
               sprint_duration = excluded.sprint_duration,
               revision = excluded.revision,
               updated_at = datetime('now')""",
        (
            user_id,
            slot.slot_number,
            slot.task.id,
            slot.timer_state,
            slot.time_remaining,
            slot.sprint_duration,
            playbook_date.isoformat(),
        ),
    )
    row = db.execute(
        """SELECT revision FROM playbook_slots
           WHERE user_id = ? AND slot_number = ? AND playbook_date = ?""",
        (user_id, slot.slot_number, playbook_date.isoformat()),
    ).fetchone()
    return row["revision"]


def clear_slot(db: sqlite3.Connection, user_id: str, playbook_date: date, slot_number: int):
    db.execute(
        "DELETE FROM playbook_slots WHERE user_id = ? AND slot_number = ? AND playbook_date = ?",
        (user_id, slot_number, playbook_date.isoformat()),
    )


def row_to_slot(row: sqlite3.Row, task) -> PlaybookSlot:
    sprint = row["sprint_duration"] or DEFAULT_SPRINT_SECONDS
    return PlaybookSlot(
        slot_number=row["slot_number"],
        task=task,
        timer_state=row["timer_state"],
        time_remaining=max(0, min(row["time_remaining"], sprint)),
        sprint_duration=sprint,
    )
