"""Task management operations.

Functions here read and write rows on the given connection but never commit;
the caller owns the transaction (see ``db.engine.transaction``).
"""

import re
import sqlite3
from datetime import datetime

from daily_playbook.db.models import (
    BUCKET_IDS,
    COLUMNS,
    PRIORITIES,
    Subtask,
    Task,
    TaskLink,
    TaskLogEntry,
)
from daily_playbook.errors import ValidationError

_PRIORITY_ORDER = "CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END"
_URL_RE = re.compile(r"^https?://\S+$")
_CHECKBOX_RE = re.compile(r"^\[( |x|X)\] (.*)$")


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


# ── Validation ────────────────────────────────────────────────────────────────


def clean_title(title: str | None) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title must not be empty")
    return title


def check_bucket(bucket_id: str) -> str:
    if bucket_id not in BUCKET_IDS:
        raise ValidationError(
            f"Unknown bucket: {bucket_id} (expected one of {', '.join(BUCKET_IDS)})"
        )
    return bucket_id


def check_priority(priority: str) -> str:
    if priority not in PRIORITIES:
        raise ValidationError(f"Unknown priority: {priority} (expected low, medium or high)")
    return priority


def check_column(column: str) -> str:
    if column not in COLUMNS:
        raise ValidationError(f"Unknown column: {column}")
    return column


# ── Tasks ─────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    bucket_id: str,
    user_id: str = "local",
    notes: str = "",
    priority: str = "medium",
    subtasks: list[str] | None = None,
    links: list[tuple[str, str]] | None = None,
) -> Task:
    """Create a new task in the `todo` column of a bucket."""
    title = clean_title(title)
    check_bucket(bucket_id)
    check_priority(priority)
    task_id = _unique_id(db, slugify(title))

    db.execute(
        """INSERT INTO tasks (id, user_id, bucket_id, title, description, priority, status)
           VALUES (?, ?, ?, ?, ?, ?, 'todo')""",
        (task_id, user_id, bucket_id, title, notes or "", priority),
    )
    for text in subtasks or []:
        add_subtask(db, task_id, text)
    for url, label in links or []:
        add_link(db, task_id, url, label)
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its subtasks, links and log entries."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    _attach_children(db, [task])
    return task


def list_tasks(
    db: sqlite3.Connection,
    user_id: str = "local",
    bucket_id: str | None = None,
    column: str | None = None,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE user_id = ?"
    params: list = [user_id]

    if bucket_id:
        query += " AND bucket_id = ?"
        params.append(bucket_id)

    if column:
        query += " AND status = ?"
        params.append(column)

    query += f" ORDER BY {_PRIORITY_ORDER}, created_at ASC, rowid ASC"
    tasks = [_row_to_task(r) for r in db.execute(query, params).fetchall()]
    _attach_children(db, tasks)
    return tasks


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Update task fields. Accepts title, notes, priority, bucket_id, column."""
    task = get_task(db, task_id)
    if not task:
        return None

    columns = {
        "title": "title",
        "notes": "description",
        "priority": "priority",
        "bucket_id": "bucket_id",
        "column": "status",
    }
    updates = {}
    for key, value in fields.items():
        if key not in columns:
            raise ValidationError(f"Unknown task field: {key}")
        if value is None:
            continue
        if key == "title":
            value = clean_title(value)
        elif key == "priority":
            check_priority(value)
        elif key == "bucket_id":
            check_bucket(value)
        elif key == "column":
            check_column(value)
        updates[columns[key]] = value

    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        list(updates.values()) + [task_id],
    )
    return get_task(db, task_id)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task along with its slot rows, logs, subtasks and links."""
    result = db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    return result.rowcount > 0


# ── Subtasks & links ──────────────────────────────────────────────────────────


def add_subtask(db: sqlite3.Connection, task_id: str, text: str, checked: bool = False) -> Subtask:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Subtask text must not be empty")
    position = db.execute(
        "SELECT COALESCE(MAX(position), -1) + 1 FROM task_subtasks WHERE task_id = ?",
        (task_id,),
    ).fetchone()[0]
    cur = db.execute(
        "INSERT INTO task_subtasks (task_id, position, text, checked) VALUES (?, ?, ?, ?)",
        (task_id, position, text, int(checked)),
    )
    return Subtask(id=cur.lastrowid, text=text, checked=checked)


def set_subtask_checked(
    db: sqlite3.Connection, task_id: str, subtask_id: int, checked: bool
) -> bool:
    cur = db.execute(
        "UPDATE task_subtasks SET checked = ? WHERE id = ? AND task_id = ?",
        (int(checked), subtask_id, task_id),
    )
    db.execute("UPDATE tasks SET updated_at = datetime('now') WHERE id = ?", (task_id,))
    return cur.rowcount > 0


def remove_subtask(db: sqlite3.Connection, task_id: str, subtask_id: int) -> bool:
    cur = db.execute(
        "DELETE FROM task_subtasks WHERE id = ? AND task_id = ?", (subtask_id, task_id)
    )
    return cur.rowcount > 0


def add_link(db: sqlite3.Connection, task_id: str, url: str, label: str = "") -> TaskLink:
    url = (url or "").strip()
    if not _URL_RE.match(url):
        raise ValidationError(f"Not a link: {url!r}")
    position = db.execute(
        "SELECT COALESCE(MAX(position), -1) + 1 FROM task_links WHERE task_id = ?",
        (task_id,),
    ).fetchone()[0]
    cur = db.execute(
        "INSERT INTO task_links (task_id, position, url, label) VALUES (?, ?, ?, ?)",
        (task_id, position, url, label or ""),
    )
    return TaskLink(id=cur.lastrowid, url=url, label=label or "")


def remove_link(db: sqlite3.Connection, task_id: str, link_id: int) -> bool:
    cur = db.execute(
        "DELETE FROM task_links WHERE id = ? AND task_id = ?", (link_id, task_id)
    )
    return cur.rowcount > 0


# ── Log entries ───────────────────────────────────────────────────────────────


def add_log_entry(db: sqlite3.Connection, task_id: str, text: str) -> TaskLogEntry:
    """Append a log entry to a task."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("Log entry must not be empty")
    cur = db.execute(
        "INSERT INTO task_logs (task_id, entry) VALUES (?, ?)", (task_id, text)
    )
    row = db.execute("SELECT * FROM task_logs WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_log(row)


def update_log_entry(
    db: sqlite3.Connection, task_id: str, entry_id: int, text: str
) -> TaskLogEntry | None:
    """Edit a log entry in place. Its position in the log does not change."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("Log entry must not be empty")
    cur = db.execute(
        "UPDATE task_logs SET entry = ?, updated_at = datetime('now') WHERE id = ? AND task_id = ?",
        (text, entry_id, task_id),
    )
    if cur.rowcount == 0:
        return None
    row = db.execute("SELECT * FROM task_logs WHERE id = ?", (entry_id,)).fetchone()
    return _row_to_log(row)


def list_log_entries(db: sqlite3.Connection, task_id: str) -> list[TaskLogEntry]:
    """Log entries in creation order."""
    rows = db.execute(
        "SELECT * FROM task_logs WHERE task_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [_row_to_log(r) for r in rows]


# ── Legacy description format ─────────────────────────────────────────────────


def parse_legacy_description(text: str) -> tuple[str, list[tuple[str, bool]], list[str]]:
    """Split an old-style description into (notes, subtasks, links).

    Lines starting with ``[ ] `` or ``[x] `` are subtasks, lines holding a
    bare URL are links, everything else stays as notes.
    """
    notes, subtasks, links = [], [], []
    for line in (text or "").splitlines():
        stripped = line.strip()
        match = _CHECKBOX_RE.match(stripped)
        if match:
            subtasks.append((match.group(2).strip(), match.group(1) in "xX"))
        elif _URL_RE.match(stripped):
            links.append(stripped)
        else:
            notes.append(line)
    return "\n".join(notes).strip(), subtasks, links


def migrate_legacy_descriptions(db: sqlite3.Connection) -> int:
    """Move subtask/link lines out of every task description. Returns rows changed."""
    changed = 0
    rows = db.execute("SELECT id, description FROM tasks").fetchall()
    for row in rows:
        notes, subtasks, links = parse_legacy_description(row["description"])
        if not subtasks and not links:
            continue
        db.execute("UPDATE tasks SET description = ? WHERE id = ?", (notes, row["id"]))
        for text, checked in subtasks:
            if text:
                add_subtask(db, row["id"], text, checked)
        for url in links:
            add_link(db, row["id"], url)
        changed += 1
    return changed


# ── Row mapping ───────────────────────────────────────────────────────────────


def _attach_children(db: sqlite3.Connection, tasks: list[Task]):
    if not tasks:
        return
    by_id = {t.id: t for t in tasks}
    marks = ",".join("?" for _ in by_id)
    ids = list(by_id)

    for r in db.execute(
        f"SELECT * FROM task_subtasks WHERE task_id IN ({marks}) ORDER BY position, id", ids
    ).fetchall():
        by_id[r["task_id"]].subtasks.append(
            Subtask(id=r["id"], text=r["text"], checked=bool(r["checked"]))
        )

    for r in db.execute(
        f"SELECT * FROM task_links WHERE task_id IN ({marks}) ORDER BY position, id", ids
    ).fetchall():
        by_id[r["task_id"]].links.append(TaskLink(id=r["id"], url=r["url"], label=r["label"]))

    for r in db.execute(
        f"SELECT * FROM task_logs WHERE task_id IN ({marks}) ORDER BY id", ids
    ).fetchall():
        by_id[r["task_id"]].log_entries.append(_row_to_log(r))


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        user_id=row["user_id"],
        bucket_id=row["bucket_id"],
        title=row["title"],
        notes=row["description"] or "",
        priority=row["priority"] or "medium",
        column=row["status"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _row_to_log(row: sqlite3.Row) -> TaskLogEntry:
    return TaskLogEntry(
        id=row["id"],
        task_id=row["task_id"],
        text=row["entry"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
