# queuedeck/server/scheduler.py
import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from queuedeck.client import QueueClient

logger = logging.getLogger(__name__)


class DelayedJobScheduler(threading.Thread):
    """Background thread that promotes due delayed jobs on every queue."""

    def __init__(self, client: "QueueClient", interval_seconds: float = 1.0):
        super().__init__(name="queuedeck-scheduler", daemon=True)
        self.client = client
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()

    def tick(self) -> int:
        promoted = self.client.promote_due_jobs()
        for queue, count in promoted.items():
            logger.info(f"Promoted {count} due delayed job(s) on queue {queue}")
        return sum(promoted.values())

    def run(self) -> None:
        logger.info(f"Delayed job scheduler running every {self.interval_seconds}s")
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Delayed job promotion failed")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive():
            self.join(timeout)
