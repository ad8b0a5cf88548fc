# queuedeck/filters/builtin.py
import logging
from datetime import timedelta

from queuedeck.common.states import DelayedState, FailedState, WaitingState
from queuedeck.filters.base import JobFilter
from queuedeck.server.context import ElectStateContext

logger = logging.getLogger(__name__)


def backoff_delay_ms(backoff_ms: int, attempts_made: int) -> int:
    """Exponential backoff: base, 2*base, 4*base, ... after each failed attempt."""
    if backoff_ms <= 0 or attempts_made < 1:
        return 0
    return backoff_ms * 2 ** (attempts_made - 1)


class RetryFilter(JobFilter):
    """Turns a failure into another attempt while the job has attempts left."""

    def on_state_election(self, elect_state_context: ElectStateContext):
        job = elect_state_context.job
        candidate_state = elect_state_context.candidate_state

        if not isinstance(candidate_state, FailedState):
            return

        if job.attempts_made >= job.max_attempts:
            logger.debug(
                f"RetryFilter: Job {job.queue}:{job.id} exhausted {job.max_attempts} attempts."
            )
            return

        reason = f"Retrying job... Attempt {job.attempts_made + 1} of {job.max_attempts}"
        delay_ms = backoff_delay_ms(job.backoff_ms, job.attempts_made)
        logger.debug(
            f"RetryFilter: Job {job.queue}:{job.id} failed ({candidate_state.failed_reason}), "
            f"retrying in {delay_ms}ms"
        )
        if delay_ms > 0:
            elect_state_context.candidate_state = DelayedState(
                elect_state_context.now + timedelta(milliseconds=delay_ms), reason=reason
            )
        else:
            elect_state_context.candidate_state = WaitingState(reason=reason)
