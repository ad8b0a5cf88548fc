# queuedeck/common/states.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from queuedeck.common.exceptions import InvalidArgument, InvalidStateTransition


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> "JobState":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(s.value for s in cls)
            raise InvalidArgument(
                f"Unknown job state '{value}'. Expected one of: {allowed}"
            ) from None


ALL_STATES: List[JobState] = list(JobState)

TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.COMPLETED, JobState.FAILED})

# Jobs a drain removes: accepted but never started.
PENDING_STATES: FrozenSet[JobState] = frozenset({JobState.WAITING, JobState.DELAYED})

INITIAL_STATES: FrozenSet[JobState] = PENDING_STATES

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.WAITING: frozenset({JobState.ACTIVE}),
    JobState.ACTIVE: frozenset(
        {JobState.COMPLETED, JobState.FAILED, JobState.DELAYED, JobState.WAITING}
    ),
    JobState.DELAYED: frozenset({JobState.WAITING}),
    JobState.FAILED: frozenset({JobState.WAITING}),
    JobState.COMPLETED: frozenset(),
}


def check_transition(current: JobState, target: JobState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(
            f"Cannot move a job from '{current.value}' to '{target.value}'"
        )


def parse_clean_state(value: Any) -> JobState:
    state = JobState.parse(value)
    if state not in TERMINAL_STATES:
        raise InvalidArgument(
            f"Only completed or failed jobs can be cleaned, got '{state.value}'"
        )
    return state


class BaseState:
    """A candidate state for a job together with the data the move records."""

    NAME: JobState

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason

    @property
    def name(self) -> JobState:
        return self.NAME


class WaitingState(BaseState):
    NAME = JobState.WAITING


class ActiveState(BaseState):
    NAME = JobState.ACTIVE

    def __init__(self, worker_id: Optional[str] = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.worker_id = worker_id


class DelayedState(BaseState):
    NAME = JobState.DELAYED

    def __init__(self, delay_until: datetime, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay_until = delay_until


class CompletedState(BaseState):
    NAME = JobState.COMPLETED

    def __init__(self, result: Any = None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.result = result


class FailedState(BaseState):
    NAME = JobState.FAILED

    def __init__(
        self,
        failed_reason: str,
        stacktrace: Optional[List[str]] = None,
        *args,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.failed_reason = failed_reason
        self.stacktrace = list(stacktrace) if stacktrace else []
