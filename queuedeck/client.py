# queuedeck/client.py
import logging
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from .common.exceptions import InvalidArgument, JobNotFound
from .common.job import Job, JobPage, Outcome, QueueInfo
from .common.states import (
    CompletedState,
    DelayedState,
    FailedState,
    JobState,
    WaitingState,
    parse_clean_state,
)
from .config import Settings
from .events import EventBus, create_event_bus
from .filters.base import JobFilter
from .filters.builtin import RetryFilter
from .server.context import ElectStateContext
from .storage import JobStorage, create_storage

logger = logging.getLogger(__name__)


class QueueClient:
    """
    The one entry point for producers, operators and workers.

    Wraps a storage backend and an event bus. Every mutating call that succeeds
    publishes exactly one change event for the queue it touched, bulk calls
    included; calls that raise publish nothing.
    """

    def __init__(
        self,
        storage: JobStorage,
        bus: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        filters: Optional[List[JobFilter]] = None,
    ):
        self.storage = storage
        self.bus = bus or EventBus()
        self.settings = settings or Settings()
        self.filters = filters if filters is not None else [RetryFilter()]

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueClient":
        return cls(create_storage(settings), create_event_bus(settings), settings)

    def close(self) -> None:
        self.bus.close()
        self.storage.close()

    def _notify(self, queue: str) -> None:
        try:
            self.bus.publish(queue)
        except Exception:
            # The mutation is committed; subscribers catch up on their next read.
            logger.exception(f"Failed to publish change event for queue {queue}")

    # --- Producers ---

    def add(
        self,
        queue: str,
        name: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        delay: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ) -> Job:
        """Enqueue a job; a positive ``delay`` parks it in the delayed state."""
        if not queue or not name:
            raise InvalidArgument("queue and job name are required")
        if max_attempts is None:
            max_attempts = self.settings.max_attempts
        backoff_ms = self.settings.backoff_ms if backoff_ms is None else backoff_ms
        if max_attempts < 1:
            raise InvalidArgument("max_attempts must be at least 1")
        if backoff_ms < 0:
            raise InvalidArgument("backoff_ms cannot be negative")

        if delay is not None and delay.total_seconds() > 0:
            state = DelayedState(datetime.now(UTC) + delay)
        else:
            state = WaitingState()
        job = self.storage.add_job(
            queue, name, data or {}, state, max_attempts=max_attempts, backoff_ms=backoff_ms
        )
        logger.debug(f"Added job {queue}:{job.id} ({name}) as {job.state.value}")
        self._notify(queue)
        return job

    # --- Queue controller ---

    def register_queue(self, queue: str) -> QueueInfo:
        if not queue:
            raise InvalidArgument("queue name is required")
        info = self.storage.register_queue(queue)
        self._notify(queue)
        return info

    def list_queues(self) -> List[QueueInfo]:
        return self.storage.list_queues()

    def pause(self, queue: str) -> QueueInfo:
        info = self.storage.set_paused(queue, True)
        logger.info(f"Paused queue {queue}")
        self._notify(queue)
        return info

    def resume(self, queue: str) -> QueueInfo:
        info = self.storage.set_paused(queue, False)
        logger.info(f"Resumed queue {queue}")
        self._notify(queue)
        return info

    def drain(self, queue: str) -> int:
        removed = self.storage.drain(queue)
        logger.info(f"Drained {removed} pending jobs from queue {queue}")
        self._notify(queue)
        return removed

    def clean(
        self, queue: str, state: Any = JobState.COMPLETED, grace_ms: int = 0, limit: int = 0
    ) -> int:
        clean_state = parse_clean_state(state)
        if grace_ms < 0 or limit < 0:
            raise InvalidArgument("grace_ms and limit cannot be negative")
        finished_before = None
        if grace_ms > 0:
            finished_before = datetime.now(UTC) - timedelta(milliseconds=grace_ms)
        removed = self.storage.clean(queue, clean_state, finished_before, limit)
        logger.info(f"Cleaned {removed} {clean_state.value} jobs from queue {queue}")
        self._notify(queue)
        return removed

    def retry_job(self, queue: str, job_id: int) -> Job:
        job = self.storage.set_job_state(
            queue,
            job_id,
            WaitingState(reason="Retried by operator"),
            expected_old_state=JobState.FAILED,
        )
        logger.info(f"Retried job {queue}:{job_id} (attempts so far: {job.attempts_made})")
        self._notify(queue)
        return job

    def promote_job(self, queue: str, job_id: int) -> Job:
        job = self.storage.set_job_state(
            queue,
            job_id,
            WaitingState(reason="Promoted by operator"),
            expected_old_state=JobState.DELAYED,
        )
        logger.info(f"Promoted delayed job {queue}:{job_id}")
        self._notify(queue)
        return job

    def remove_job(self, queue: str, job_id: int) -> bool:
        removed = self.storage.remove_job(queue, job_id)
        logger.info(f"Remove job {queue}:{job_id}: {'removed' if removed else 'already absent'}")
        self._notify(queue)
        return removed

    # --- Listing ---

    def get_job(self, queue: str, job_id: int) -> Job:
        job = self.storage.get_job(queue, job_id)
        if job is None:
            raise JobNotFound(queue, job_id)
        return job

    def list_jobs(
        self,
        queue: str,
        state: Any = JobState.WAITING,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> JobPage:
        job_state = JobState.parse(state)
        page_size = self.settings.page_size if page_size is None else page_size
        if page < 1:
            raise InvalidArgument("page must be 1 or greater")
        if not 1 <= page_size <= self.settings.max_page_size:
            raise InvalidArgument(
                f"pageSize must be between 1 and {self.settings.max_page_size}"
            )
        start = (page - 1) * page_size
        items, total = self.storage.list_jobs(queue, job_state, start, page_size)
        return JobPage(items=items, total=total, page=page, page_size=page_size)

    def get_job_counts(self, queue: str) -> Dict[str, int]:
        return self.storage.get_job_counts(queue)

    # --- Worker dispatch ---

    def claim_next(self, queue: str, worker_id: Optional[str] = None) -> Optional[Job]:
        """Hand the oldest waiting job to a worker, or None if paused or empty."""
        now = datetime.now(UTC)
        promoted = self.storage.promote_due(queue, now)
        job = self.storage.claim_next(queue, worker_id, now)
        if job is not None:
            logger.debug(f"Worker {worker_id} claimed job {queue}:{job.id}")
        if promoted or job is not None:
            self._notify(queue)
        return job

    def report_result(self, queue: str, job_id: int, outcome: Outcome) -> Job:
        """Record what happened to a claimed job. Call exactly once per claim."""
        job = self.get_job(queue, job_id)
        now = datetime.now(UTC)
        if outcome.succeeded:
            state = CompletedState(result=outcome.result)
        else:
            context = ElectStateContext(
                job=job,
                candidate_state=FailedState(outcome.reason or "Job failed", outcome.stacktrace),
                now=now,
            )
            for job_filter in self.filters:
                job_filter.on_state_election(context)
            state = context.candidate_state

        updated = self.storage.set_job_state(
            queue, job_id, state, expected_old_state=JobState.ACTIVE, now=now
        )
        if updated.state is JobState.FAILED:
            logger.warning(
                f"Job {queue}:{job_id} failed after {updated.attempts_made} attempt(s): "
                f"{updated.failed_reason}"
            )
        else:
            logger.debug(f"Job {queue}:{job_id} is now {updated.state.value}")
        self._notify(queue)
        return updated

    def promote_due_jobs(self) -> Dict[str, int]:
        """Move every delayed job whose time has come back to waiting."""
        promoted: Dict[str, int] = {}
        now = datetime.now(UTC)
        for info in self.storage.list_queues():
            count = self.storage.promote_due(info.name, now)
            if count:
                promoted[info.name] = count
                self._notify(info.name)
        return promoted

    def find_abandoned_jobs(
        self, queue: str, timeout_seconds: Optional[int] = None
    ) -> List[Job]:
        """Active jobs claimed longer ago than the claim timeout. Read-only."""
        timeout = self.settings.claim_timeout_seconds if timeout_seconds is None else timeout_seconds
        cutoff = datetime.now(UTC) - timedelta(seconds=timeout)
        return self.storage.find_abandoned_jobs(queue, cutoff)
