# queuedeck/common/job.py
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from queuedeck.common.states import JobState


@dataclass(frozen=True)
class Job:
    """
    One unit of asynchronous work held by a queue.

    Records are immutable: every state change produces a new instance through
    ``apply_transition`` so readers holding an older reference never observe a
    half-applied move.
    """

    id: int
    queue: str
    name: str
    state: JobState
    data: Dict[str, Any] = field(default_factory=dict)

    attempts_made: int = 0
    max_attempts: int = 1
    backoff_ms: int = 0

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    processed_on: Optional[datetime] = None
    finished_on: Optional[datetime] = None
    delay_until: Optional[datetime] = None

    failed_reason: Optional[str] = None
    stacktrace: Optional[List[str]] = None
    return_value: Any = None

    # Latest claim, used to spot abandoned work
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None


@dataclass(frozen=True)
class QueueInfo:
    name: str
    paused: bool = False


@dataclass
class JobPage:
    items: List[Job]
    total: int
    page: int
    page_size: int


@dataclass(frozen=True)
class Outcome:
    """What a worker reports back for a claimed job."""

    succeeded: bool
    result: Any = None
    reason: Optional[str] = None
    stacktrace: Optional[List[str]] = None

    @classmethod
    def success(cls, result: Any = None) -> "Outcome":
        return cls(succeeded=True, result=result)

    @classmethod
    def failure(cls, reason: str, stacktrace: Optional[List[str]] = None) -> "Outcome":
        return cls(succeeded=False, reason=reason, stacktrace=stacktrace)
