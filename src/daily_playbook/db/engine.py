"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    bucket_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    priority TEXT DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'in-progress', 'done')),
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, bucket_id);

CREATE TABLE IF NOT EXISTS task_subtasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    text TEXT NOT NULL,
    checked INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS task_links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    url TEXT NOT NULL,
    label TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS task_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    entry TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS playbook_slots (
    user_id TEXT NOT NULL,
    slot_number INTEGER NOT NULL CHECK (slot_number BETWEEN 1 AND 8),
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    timer_state TEXT DEFAULT 'idle' CHECK (timer_state IN ('idle', 'running', 'paused', 'logging')),
    time_remaining INTEGER NOT NULL,
    playbook_date TEXT NOT NULL,
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(user_id, slot_number, playbook_date)
);

CREATE TABLE IF NOT EXISTS change_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    op TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);
"""

WATCHED_TABLES = ("tasks", "task_subtasks", "task_links", "task_logs", "playbook_slots")


def _change_triggers() -> str:
    parts = []
    for table in WATCHED_TABLES:
        for op in ("INSERT", "UPDATE", "DELETE"):
            parts.append(
                f"CREATE TRIGGER IF NOT EXISTS {table}_{op.lower()}_cl AFTER {op} ON {table} BEGIN\n"
                f"    INSERT INTO change_log (table_name, op) VALUES ('{table}', '{op.lower()}');\n"
                f"END;"
            )
    return "\n\n".join(parts)


def _run_migrations(conn: sqlite3.Connection):
    """Run schema migrations idempotently."""
    migrations = [
        "ALTER TABLE playbook_slots ADD COLUMN sprint_duration INTEGER DEFAULT 3600",
        "ALTER TABLE playbook_slots ADD COLUMN revision INTEGER DEFAULT 0",
    ]
    for sql in migrations:
        try:
            conn.execute(sql)
        except sqlite3.OperationalError:
            pass  # Column already exists

    # Split legacy "[ ] item" / "[x] item" / URL lines out of descriptions once
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    if version < 1:
        from daily_playbook.core.tasks import migrate_legacy_descriptions

        migrate_legacy_descriptions(conn)
        conn.execute("PRAGMA user_version = 1")

    conn.commit()


def init_db(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.executescript(_change_triggers())
    _run_migrations(conn)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection):
    """Commit everything written inside the block, or roll it all back."""
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise


def latest_change_id(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(id) FROM change_log").fetchone()
    return row[0] or 0


def prune_change_log(conn: sqlite3.Connection, keep: int = 1000) -> int:
    """Drop all but the newest `keep` change-feed rows."""
    cur = conn.execute(
        "DELETE FROM change_log WHERE id <= (SELECT MAX(id) FROM change_log) - ?",
        (keep,),
    )
    conn.commit()
    return cur.rowcount
