# queuedeck/server/processor.py
import logging
import traceback
from typing import TYPE_CHECKING, Any, Mapping

from queuedeck.common.job import Job, Outcome
from queuedeck.execution.performer import perform_job, resolve_handler

if TYPE_CHECKING:
    from queuedeck.client import QueueClient

logger = logging.getLogger(__name__)


class JobProcessor:
    def __init__(self, job: Job, client: "QueueClient", handlers: Mapping[str, Any]):
        self.job = job
        self.client = client
        self.handlers = handlers

    def run_handler(self) -> Outcome:
        """Runs the job's handler and captures how it went without raising."""
        try:
            handler = resolve_handler(self.handlers, self.job.name)
            result = perform_job(handler, self.job)
        except Exception as e:
            logger.error(f"Job {self.job.queue}:{self.job.id} failed.", exc_info=True)
            reason = str(e) or type(e).__name__
            return Outcome.failure(reason, traceback.format_exc().splitlines())
        return Outcome.success(result)

    def process(self) -> Job:
        outcome = self.run_handler()
        # Retry and backoff are decided by the client's filters.
        return self.client.report_result(self.job.queue, self.job.id, outcome)
