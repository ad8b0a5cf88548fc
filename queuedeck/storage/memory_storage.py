# queuedeck/storage/memory_storage.py
import logging
from contextlib import ExitStack
from datetime import datetime, UTC
from threading import Lock, RLock
from typing import Any, Dict, Iterable, List, Optional, Tuple

from queuedeck.common.exceptions import InvalidStateTransition, JobNotFound, QueueNotFound
from queuedeck.common.job import Job, QueueInfo
from queuedeck.common.states import (
    ActiveState,
    BaseState,
    JobState,
    PENDING_STATES,
    WaitingState,
)
from queuedeck.common.transitions import apply_transition, new_job
from queuedeck.storage.base import JobStorage

logger = logging.getLogger(__name__)


class _QueueRecord:
    def __init__(self, name: str):
        self.name = name
        self.paused = False
        self.last_job_id = 0
        # Copy-on-write snapshot: replaced under commit_lock, never mutated in place
        self.jobs: Dict[int, Job] = {}
        self.bulk_lock = RLock()
        self.commit_lock = Lock()
        self.job_locks: Dict[int, Lock] = {}

    def info(self) -> QueueInfo:
        return QueueInfo(name=self.name, paused=self.paused)


class MemoryStorage(JobStorage):
    """Process-local storage.

    Lock order is bulk_lock -> job locks (ascending id) -> commit_lock. Single
    job operations only ever hold one job lock, and readers take none of them:
    they read ``record.jobs`` once and work on that snapshot.
    """

    name = "memory"

    def __init__(self, queues: Optional[Iterable[str]] = None):
        self._queues: Dict[str, _QueueRecord] = {}
        self._lock = Lock()
        for queue in queues or []:
            self.register_queue(queue)

    def _record(self, queue: str, create: bool = False) -> _QueueRecord:
        record = self._queues.get(queue)
        if record is not None:
            return record
        if not create:
            raise QueueNotFound(queue)
        with self._lock:
            record = self._queues.get(queue)
            if record is None:
                record = _QueueRecord(queue)
                self._queues[queue] = record
                logger.debug("Registered queue %s", queue)
            return record

    def _job_lock(self, record: _QueueRecord, job_id: int) -> Lock:
        with record.commit_lock:
            lock = record.job_locks.get(job_id)
            if lock is None:
                lock = record.job_locks[job_id] = Lock()
            return lock

    def _lock_jobs(self, stack: ExitStack, record: _QueueRecord, job_ids: Iterable[int]):
        for job_id in sorted(job_ids):
            stack.enter_context(self._job_lock(record, job_id))

    def _commit(
        self,
        record: _QueueRecord,
        upserts: Iterable[Job] = (),
        removals: Iterable[int] = (),
    ) -> None:
        with record.commit_lock:
            jobs = dict(record.jobs)
            for job in upserts:
                jobs[job.id] = job
            for job_id in removals:
                jobs.pop(job_id, None)
                record.job_locks.pop(job_id, None)
            record.jobs = jobs

    # --- Queues ---

    def register_queue(self, queue: str) -> QueueInfo:
        return self._record(queue, create=True).info()

    def get_queue(self, queue: str) -> Optional[QueueInfo]:
        record = self._queues.get(queue)
        return record.info() if record else None

    def list_queues(self) -> List[QueueInfo]:
        with self._lock:
            records = list(self._queues.values())
        return sorted((r.info() for r in records), key=lambda q: q.name)

    def set_paused(self, queue: str, paused: bool) -> QueueInfo:
        record = self._record(queue)
        with record.bulk_lock:
            record.paused = paused
        return record.info()

    # --- Jobs ---

    def add_job(
        self,
        queue: str,
        name: str,
        data: Dict[str, Any],
        state: BaseState,
        max_attempts: int = 1,
        backoff_ms: int = 0,
    ) -> Job:
        record = self._record(queue, create=True)
        with record.commit_lock:
            record.last_job_id += 1
            job = new_job(
                record.last_job_id,
                queue,
                name,
                data,
                state,
                max_attempts=max_attempts,
                backoff_ms=backoff_ms,
            )
            jobs = dict(record.jobs)
            jobs[job.id] = job
            record.jobs = jobs
        return job

    def get_job(self, queue: str, job_id: int) -> Optional[Job]:
        return self._record(queue).jobs.get(job_id)

    def set_job_state(
        self,
        queue: str,
        job_id: int,
        state: BaseState,
        expected_old_state: Optional[JobState] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        record = self._record(queue)
        if job_id not in record.jobs:
            raise JobNotFound(queue, job_id)
        with self._job_lock(record, job_id):
            job = record.jobs.get(job_id)
            if job is None:
                raise JobNotFound(queue, job_id)
            if expected_old_state is not None and job.state is not expected_old_state:
                raise InvalidStateTransition(
                    f"Job {job_id} is {job.state.value}, expected {expected_old_state.value}"
                )
            updated = apply_transition(job, state, now)
            self._commit(record, upserts=[updated])
            return updated

    def remove_job(self, queue: str, job_id: int) -> bool:
        record = self._record(queue)
        if job_id not in record.jobs:
            return False
        with self._job_lock(record, job_id):
            if job_id not in record.jobs:
                return False
            self._commit(record, removals=[job_id])
            return True

    # --- Worker dispatch ---

    def claim_next(
        self, queue: str, worker_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[Job]:
        record = self._record(queue)
        now = now or datetime.now(UTC)
        with record.bulk_lock:
            while not record.paused:
                waiting = [j for j in record.jobs.values() if j.state is JobState.WAITING]
                if not waiting:
                    return None
                oldest = min(waiting, key=lambda j: (j.created_at, j.id))
                with self._job_lock(record, oldest.id):
                    current = record.jobs.get(oldest.id)
                    if current is None or current.state is not JobState.WAITING:
                        continue
                    claimed = apply_transition(current, ActiveState(worker_id), now)
                    self._commit(record, upserts=[claimed])
                    return claimed
        return None

    def promote_due(self, queue: str, now: Optional[datetime] = None) -> int:
        record = self._record(queue)
        now = now or datetime.now(UTC)
        with record.bulk_lock:
            due = [
                j.id
                for j in record.jobs.values()
                if j.state is JobState.DELAYED and j.delay_until and j.delay_until <= now
            ]
            if not due:
                return 0
            promoted = []
            with ExitStack() as stack:
                self._lock_jobs(stack, record, due)
                for job_id in due:
                    current = record.jobs.get(job_id)
                    if current is not None and current.state is JobState.DELAYED:
                        promoted.append(apply_transition(current, WaitingState(), now))
                self._commit(record, upserts=promoted)
            return len(promoted)

    # --- Bulk ---

    def _remove_matching(self, record: _QueueRecord, job_ids: List[int], states) -> int:
        with ExitStack() as stack:
            self._lock_jobs(stack, record, job_ids)
            removed = [
                job_id
                for job_id in job_ids
                if job_id in record.jobs and record.jobs[job_id].state in states
            ]
            self._commit(record, removals=removed)
        return len(removed)

    def drain(self, queue: str) -> int:
        record = self._record(queue)
        with record.bulk_lock:
            pending = [j.id for j in record.jobs.values() if j.state in PENDING_STATES]
            return self._remove_matching(record, pending, PENDING_STATES)

    def clean(
        self,
        queue: str,
        state: JobState,
        finished_before: Optional[datetime] = None,
        limit: int = 0,
    ) -> int:
        record = self._record(queue)
        with record.bulk_lock:
            matching = [
                j
                for j in record.jobs.values()
                if j.state is state
                and (finished_before is None or j.finished_on <= finished_before)
            ]
            matching.sort(key=lambda j: (j.finished_on, j.id))
            if limit > 0:
                matching = matching[:limit]
            return self._remove_matching(record, [j.id for j in matching], {state})

    # --- Reads ---

    def list_jobs(
        self, queue: str, state: JobState, start: int, count: int
    ) -> Tuple[List[Job], int]:
        snapshot = self._record(queue).jobs
        matching = [j for j in snapshot.values() if j.state is state]
        matching.sort(key=lambda j: (j.created_at, j.id), reverse=True)
        return matching[start : start + count], len(matching)

    def count_jobs(self, queue: str, state: JobState) -> int:
        snapshot = self._record(queue).jobs
        return sum(1 for j in snapshot.values() if j.state is state)

    def get_job_counts(self, queue: str) -> Dict[str, int]:
        snapshot = self._record(queue).jobs
        counts = {state.value: 0 for state in JobState}
        for job in snapshot.values():
            counts[job.state.value] += 1
        return counts

    def find_abandoned_jobs(self, queue: str, claimed_before: datetime) -> List[Job]:
        snapshot = self._record(queue).jobs
        return sorted(
            (
                j
                for j in snapshot.values()
                if j.state is JobState.ACTIVE and j.claimed_at and j.claimed_at < claimed_before
            ),
            key=lambda j: (j.claimed_at, j.id),
        )
