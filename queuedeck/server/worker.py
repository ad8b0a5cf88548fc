# queuedeck/server/worker.py
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from queuedeck.server.processor import JobProcessor

if TYPE_CHECKING:
    from queuedeck.client import QueueClient

logger = logging.getLogger(__name__)


class Worker:
    """
    Consumes its queues with a fixed number of claim/process threads per queue.

    ``concurrency`` is either one count for every queue or a per-queue mapping;
    queues it does not name get a single thread. It defaults to the client's
    ``settings.concurrency``.
    """

    def __init__(
        self,
        client: "QueueClient",
        handlers: Mapping[str, Any],
        queues: Optional[List[str]] = None,
        poll_interval: float = 1.0,
        worker_id: Optional[str] = None,
        concurrency: Union[int, Mapping[str, int], None] = None,
    ):
        self.client = client
        self.handlers = handlers
        self.queues = list(queues or client.settings.queues)
        self.poll_interval = poll_interval
        self.worker_id = worker_id or f"worker:{uuid.uuid4()}"
        if concurrency is None:
            concurrency = client.settings.concurrency
        if isinstance(concurrency, int):
            self.concurrency: Dict[str, int] = {q: concurrency for q in self.queues}
        else:
            self.concurrency = {q: concurrency.get(q, 1) for q in self.queues}
        if any(count < 1 for count in self.concurrency.values()):
            raise ValueError("concurrency must be at least 1 per queue")
        self._shutdown = threading.Event()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    def _process_next(self, queue: str, slot_id: str) -> bool:
        job = self.client.claim_next(queue, worker_id=slot_id)
        if job is None:
            return False
        logger.info(f"[{slot_id}] Picked up job {queue}:{job.id} ({job.name})")
        final = JobProcessor(job, self.client, self.handlers).process()
        logger.info(f"[{slot_id}] Finished job {queue}:{job.id} -> {final.state.value}")
        return True

    def run_once(self) -> int:
        """One pass over every queue in the calling thread; returns how many jobs were processed."""
        processed = 0
        for queue in self.queues:
            if self._shutdown.is_set():
                break
            if self._process_next(queue, self.worker_id):
                processed += 1
        return processed

    def _consume(self, queue: str, slot_id: str) -> None:
        while not self._shutdown.is_set():
            try:
                if not self._process_next(queue, slot_id):
                    self._shutdown.wait(self.poll_interval)
            except Exception:
                logger.exception(f"[{slot_id}] Unhandled exception in worker loop")
                self._shutdown.wait(5)  # Cooldown period after a major failure

    def run(self) -> None:
        """Starts the processing threads and blocks until shutdown is requested."""
        logger.info(
            f"[{self.worker_id}] Starting worker for queues: "
            + ", ".join(f"{q} (x{self.concurrency[q]})" for q in self.queues)
        )
        for queue in self.queues:
            self.client.register_queue(queue)

        threads = []
        for queue in self.queues:
            for slot in range(self.concurrency[queue]):
                slot_id = f"{self.worker_id}:{queue}:{slot}"
                thread = threading.Thread(
                    target=self._consume, args=(queue, slot_id), name=slot_id, daemon=True
                )
                thread.start()
                threads.append(thread)

        try:
            while not self._shutdown.wait(self.poll_interval):
                pass
        except KeyboardInterrupt:
            logger.info(f"[{self.worker_id}] Shutdown requested...")
            self._shutdown.set()
        # Jobs already running finish before the worker exits.
        for thread in threads:
            thread.join()
        logger.info(f"[{self.worker_id}] Worker has stopped.")
