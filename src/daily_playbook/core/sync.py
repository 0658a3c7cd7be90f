"""Keeping the in-memory board consistent with the backing store.

Every committed write to a watched table appends a row to ``change_log``
(see ``db.engine``). ``ChangeWatcher`` polls that feed and asks the board to
reload whenever it advances, whichever process made the change.
"""

import logging
import threading
from pathlib import Path

from daily_playbook.db.engine import init_db, latest_change_id, prune_change_log
from daily_playbook.db.models import PlaybookSlot

logger = logging.getLogger(__name__)


def should_persist_tick(before: PlaybookSlot, after: PlaybookSlot, every: int) -> bool:
    """Tick persistence policy.

    State changes (the threshold crossing) are always written. Plain
    countdown ticks are written when the remaining time lands on a multiple
    of ``every`` seconds.
    """
    if before.timer_state != after.timer_state:
        return True
    if every <= 1:
        return True
    return after.time_remaining % every == 0


def merge_slot(
    local: PlaybookSlot, remote: PlaybookSlot, written_elsewhere: bool = False
) -> PlaybookSlot:
    """Reconcile one slot after a reload.

    The stored state wins. The one exception is a countdown that runs on both
    sides for the same task while the stored row is still the one this board
    last wrote or read: the lower remaining time is kept there, so a reload
    never rewinds ticks that have not been written yet. Once another session
    has written the row, its value stands even when it adds time back.
    """
    if (
        not written_elsewhere
        and local.task is not None
        and remote.task is not None
        and local.task.id == remote.task.id
        and local.timer_state == "running"
        and remote.timer_state == "running"
        and local.time_remaining < remote.time_remaining
    ):
        remote.time_remaining = local.time_remaining
    return remote


class ChangeWatcher:
    """Background thread that reloads the board when the change feed moves."""

    def __init__(
        self,
        board,
        db_path: Path,
        poll_interval: float = 1.0,
        keep_changes: int = 1000,
    ):
        self.board = board
        self.db_path = db_path
        self.poll_interval = poll_interval
        self.keep_changes = keep_changes
        self.last_seen: int | None = None
        self._reloads = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the watcher thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="change-watcher", daemon=True
        )
        self._thread.start()
        logger.info("Change watcher started")

    def stop(self):
        """Signal the watcher thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Change watcher stopped")

    def _run(self):
        db = init_db(self.db_path)
        try:
            while not self._stop_event.is_set():
                try:
                    self.poll(db)
                except Exception:
                    logger.exception("Error in change watcher loop")
                self._stop_event.wait(self.poll_interval)
        finally:
            db.close()

    def poll(self, db) -> bool:
        """Check the feed once. Returns True when a reload happened."""
        latest = latest_change_id(db)
        if self.last_seen is None:
            self.last_seen = latest
            return False
        if latest == self.last_seen:
            return False
        self.last_seen = latest
        self.board.reload()
        self._reloads += 1
        if self._reloads % 100 == 0:
            prune_change_log(db, self.keep_changes)
        return True
