"""The shared one-second tick that drives every running slot."""

import logging
import threading

logger = logging.getLogger(__name__)


class SlotTicker:
    """Background thread calling ``board.tick()`` once per interval."""

    def __init__(self, board, interval: float = 1.0):
        self.board = board
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the ticker thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="slot-ticker", daemon=True)
        self._thread.start()
        logger.info("Slot ticker started")

    def stop(self):
        """Signal the ticker thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Slot ticker stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.board.tick()
            except Exception:
                logger.exception("Error in slot ticker loop")
