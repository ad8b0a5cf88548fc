# queuedeck/common/transitions.py
"""The single place where job records change state.

Every storage backend funnels state changes through ``apply_transition`` so the
record invariants hold regardless of where the job lives:

* ``finished_on`` is set exactly when the job is completed or failed,
* ``failed_reason``/``stacktrace`` only exist on failed jobs,
* ``delay_until`` only exists on delayed jobs,
* ``attempts_made`` never decreases and ``processed_on`` survives once set.
"""
from dataclasses import replace
from datetime import datetime, UTC
from typing import Optional

from queuedeck.common.job import Job
from queuedeck.common.states import (
    ActiveState,
    BaseState,
    CompletedState,
    DelayedState,
    FailedState,
    INITIAL_STATES,
    JobState,
    WaitingState,
    check_transition,
)
from queuedeck.common.exceptions import InvalidStateTransition


def new_job(
    job_id: int,
    queue: str,
    name: str,
    data: dict,
    state: BaseState,
    max_attempts: int = 1,
    backoff_ms: int = 0,
    now: Optional[datetime] = None,
) -> Job:
    if state.name not in INITIAL_STATES:
        raise InvalidStateTransition(
            f"Jobs can only be created waiting or delayed, not '{state.name.value}'"
        )
    return Job(
        id=job_id,
        queue=queue,
        name=name,
        data=dict(data or {}),
        state=state.name,
        max_attempts=max_attempts,
        backoff_ms=backoff_ms,
        created_at=now or datetime.now(UTC),
        delay_until=state.delay_until if isinstance(state, DelayedState) else None,
    )


def apply_transition(job: Job, state: BaseState, now: Optional[datetime] = None) -> Job:
    """Return ``job`` moved into ``state``; raises InvalidStateTransition."""
    check_transition(job.state, state.name)
    now = now or datetime.now(UTC)

    if isinstance(state, ActiveState):
        return replace(
            job,
            state=JobState.ACTIVE,
            attempts_made=job.attempts_made + 1,
            processed_on=job.processed_on or now,
            claimed_by=state.worker_id,
            claimed_at=now,
        )

    if isinstance(state, CompletedState):
        return replace(
            job,
            state=JobState.COMPLETED,
            finished_on=now,
            return_value=state.result,
            failed_reason=None,
            stacktrace=None,
        )

    if isinstance(state, FailedState):
        return replace(
            job,
            state=JobState.FAILED,
            finished_on=now,
            failed_reason=state.failed_reason,
            stacktrace=list(state.stacktrace),
        )

    if isinstance(state, DelayedState):
        return replace(
            job,
            state=JobState.DELAYED,
            delay_until=state.delay_until,
            finished_on=None,
            failed_reason=None,
            stacktrace=None,
        )

    if isinstance(state, WaitingState):
        return replace(
            job,
            state=JobState.WAITING,
            delay_until=None,
            finished_on=None,
            failed_reason=None,
            stacktrace=None,
        )

    raise InvalidStateTransition(f"Unsupported target state {type(state).__name__}")
