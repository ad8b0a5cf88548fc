# queuedeck/storage/base.py
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from queuedeck.common.job import Job, QueueInfo
from queuedeck.common.states import ALL_STATES, BaseState, JobState


class JobStorage(ABC):
    """Owner of every queue and job record.

    Backends must serialize state changes per job, serialize claims and bulk
    removals per queue, and serve the read methods from a consistent snapshot
    without waiting on writers. All state changes go through
    ``queuedeck.common.transitions.apply_transition``.
    """

    name = "base"

    # --- Queues ---

    @abstractmethod
    def register_queue(self, queue: str) -> QueueInfo: ...

    @abstractmethod
    def get_queue(self, queue: str) -> Optional[QueueInfo]: ...

    @abstractmethod
    def list_queues(self) -> List[QueueInfo]: ...

    @abstractmethod
    def set_paused(self, queue: str, paused: bool) -> QueueInfo: ...

    # --- Jobs ---

    @abstractmethod
    def add_job(
        self,
        queue: str,
        name: str,
        data: Dict[str, Any],
        state: BaseState,
        max_attempts: int = 1,
        backoff_ms: int = 0,
    ) -> Job: ...

    @abstractmethod
    def get_job(self, queue: str, job_id: int) -> Optional[Job]: ...

    @abstractmethod
    def set_job_state(
        self,
        queue: str,
        job_id: int,
        state: BaseState,
        expected_old_state: Optional[JobState] = None,
        now: Optional[datetime] = None,
    ) -> Job: ...

    @abstractmethod
    def remove_job(self, queue: str, job_id: int) -> bool: ...

    # --- Worker dispatch ---

    @abstractmethod
    def claim_next(
        self, queue: str, worker_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[Job]: ...

    @abstractmethod
    def promote_due(self, queue: str, now: Optional[datetime] = None) -> int: ...

    # --- Bulk ---

    @abstractmethod
    def drain(self, queue: str) -> int: ...

    @abstractmethod
    def clean(
        self,
        queue: str,
        state: JobState,
        finished_before: Optional[datetime] = None,
        limit: int = 0,
    ) -> int: ...

    # --- Reads ---

    @abstractmethod
    def list_jobs(
        self, queue: str, state: JobState, start: int, count: int
    ) -> Tuple[List[Job], int]: ...

    @abstractmethod
    def count_jobs(self, queue: str, state: JobState) -> int: ...

    def get_job_counts(self, queue: str) -> Dict[str, int]:
        return {state.value: self.count_jobs(queue, state) for state in ALL_STATES}

    @abstractmethod
    def find_abandoned_jobs(self, queue: str, claimed_before: datetime) -> List[Job]: ...

    def close(self) -> None:
        pass
