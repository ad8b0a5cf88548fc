"""Behaviour every storage backend must share."""
from datetime import UTC, datetime, timedelta

import pytest

from queuedeck.common.exceptions import InvalidStateTransition, JobNotFound, QueueNotFound
from queuedeck.common.states import (
    CompletedState,
    DelayedState,
    FailedState,
    JobState,
    WaitingState,
)


def _add(storage, queue="provision", name="provision_server", **data):
    return storage.add_job(queue, name, data, WaitingState())


def _finish(storage, queue, state, now=None):
    job = storage.claim_next(queue, "worker-1", now)
    assert job is not None
    return storage.set_job_state(
        queue, job.id, state, expected_old_state=JobState.ACTIVE, now=now
    )


def test_ids_are_per_queue_and_never_reused(storage):
    first = _add(storage, "provision")
    other = _add(storage, "start")
    second = _add(storage, "provision")
    assert (first.id, second.id) == (1, 2)
    assert other.id == 1

    assert storage.remove_job("provision", second.id) is True
    third = _add(storage, "provision")
    assert third.id == 3


def test_add_registers_queue_implicitly(storage):
    assert storage.get_queue("stop") is None
    _add(storage, "stop")
    assert storage.get_queue("stop").paused is False
    assert "stop" in [q.name for q in storage.list_queues()]


def test_unknown_queue_raises_not_found(storage):
    with pytest.raises(QueueNotFound):
        storage.set_paused("nope", True)
    with pytest.raises(QueueNotFound):
        storage.drain("nope")
    with pytest.raises(QueueNotFound):
        storage.remove_job("nope", 1)
    with pytest.raises(QueueNotFound):
        storage.list_jobs("nope", JobState.WAITING, 0, 20)


def test_claim_is_fifo_and_increments_attempts(storage):
    jobs = [_add(storage, server_id=i) for i in range(3)]
    claimed = storage.claim_next("provision", "worker-1")
    assert claimed.id == jobs[0].id
    assert claimed.state is JobState.ACTIVE
    assert claimed.attempts_made == 1
    assert claimed.processed_on is not None
    assert claimed.claimed_by == "worker-1"
    assert storage.get_job("provision", claimed.id).state is JobState.ACTIVE
    assert storage.claim_next("provision").id == jobs[1].id


def test_claim_returns_none_when_empty_or_paused(storage):
    storage.register_queue("provision")
    assert storage.claim_next("provision") is None

    _add(storage)
    storage.set_paused("provision", True)
    assert storage.claim_next("provision") is None
    assert storage.count_jobs("provision", JobState.WAITING) == 1

    storage.set_paused("provision", False)
    assert storage.claim_next("provision") is not None


def test_set_job_state_checks_expected_state(storage):
    job = _add(storage)
    with pytest.raises(InvalidStateTransition):
        storage.set_job_state(
            "provision", job.id, WaitingState(), expected_old_state=JobState.FAILED
        )
    with pytest.raises(JobNotFound):
        storage.set_job_state("provision", 999, WaitingState())
    assert storage.get_job("provision", job.id).state is JobState.WAITING


def test_failed_job_round_trip(storage):
    _add(storage)
    failed = _finish(storage, "provision", FailedState("boom", ["Traceback", "ValueError: boom"]))
    stored = storage.get_job("provision", failed.id)
    assert stored.state is JobState.FAILED
    assert stored.failed_reason == "boom"
    assert stored.stacktrace == ["Traceback", "ValueError: boom"]
    assert stored.finished_on is not None
    assert stored.data == {}

    retried = storage.set_job_state(
        "provision", failed.id, WaitingState(), expected_old_state=JobState.FAILED
    )
    assert retried.failed_reason is None
    assert retried.finished_on is None
    assert retried.attempts_made == 1
    assert storage.get_job("provision", failed.id).state is JobState.WAITING


def test_completed_job_keeps_return_value(storage):
    _add(storage, server_id=12)
    done = _finish(storage, "provision", CompletedState(result={"ip": "10.0.0.1"}))
    stored = storage.get_job("provision", done.id)
    assert stored.return_value == {"ip": "10.0.0.1"}
    assert stored.data == {"server_id": 12}


def test_remove_is_idempotent(storage):
    job = _add(storage)
    assert storage.remove_job("provision", job.id) is True
    assert storage.remove_job("provision", job.id) is False
    assert storage.get_job("provision", job.id) is None
    assert storage.count_jobs("provision", JobState.WAITING) == 0


def test_drain_removes_only_pending_jobs(storage):
    now = datetime.now(UTC)
    _add(storage)
    _add(storage)
    storage.add_job("provision", "provision_server", {}, DelayedState(now + timedelta(hours=1)))
    _add(storage)
    active = storage.claim_next("provision")
    _add(storage)
    _finish(storage, "provision", CompletedState())

    assert storage.drain("provision") == 3
    counts = storage.get_job_counts("provision")
    assert counts == {"waiting": 0, "active": 1, "delayed": 0, "completed": 1, "failed": 0}
    assert storage.get_job("provision", active.id).state is JobState.ACTIVE
    assert storage.drain("provision") == 0


def test_clean_removes_only_requested_terminal_state(storage):
    for _ in range(5):
        _add(storage)
        _finish(storage, "provision", CompletedState())
    _add(storage)
    _finish(storage, "provision", FailedState("boom"))

    assert storage.clean("provision", JobState.COMPLETED) == 5
    assert storage.count_jobs("provision", JobState.COMPLETED) == 0
    assert storage.count_jobs("provision", JobState.FAILED) == 1


def test_clean_honours_grace_and_limit(storage):
    base = datetime.now(UTC) - timedelta(hours=1)
    for minute in range(4):
        _add(storage)
        _finish(storage, "provision", CompletedState(), now=base + timedelta(minutes=minute))

    # Only jobs finished at least 90 seconds after base are too recent
    cutoff = base + timedelta(seconds=90)
    assert storage.clean("provision", JobState.COMPLETED, finished_before=cutoff) == 2
    assert storage.clean("provision", JobState.COMPLETED, limit=1) == 1
    remaining, total = storage.list_jobs("provision", JobState.COMPLETED, 0, 10)
    assert total == 1
    assert remaining[0].id == 4


def test_promote_due_moves_only_elapsed_delays(storage):
    now = datetime.now(UTC)
    due = storage.add_job("provision", "provision_server", {}, DelayedState(now - timedelta(seconds=1)))
    later = storage.add_job("provision", "provision_server", {}, DelayedState(now + timedelta(hours=1)))

    assert storage.promote_due("provision", now) == 1
    assert storage.get_job("provision", due.id).state is JobState.WAITING
    assert storage.get_job("provision", due.id).delay_until is None
    assert storage.get_job("provision", later.id).state is JobState.DELAYED
    assert storage.promote_due("provision", now) == 0


def test_list_jobs_pages_newest_first(storage):
    jobs = [_add(storage, n=i) for i in range(5)]
    page, total = storage.list_jobs("provision", JobState.WAITING, 0, 2)
    assert total == 5
    assert [j.id for j in page] == [jobs[4].id, jobs[3].id]
    page, total = storage.list_jobs("provision", JobState.WAITING, 4, 2)
    assert [j.id for j in page] == [jobs[0].id]
    page, total = storage.list_jobs("provision", JobState.FAILED, 0, 2)
    assert (page, total) == ([], 0)


def test_find_abandoned_jobs(storage):
    _add(storage)
    _add(storage)
    long_ago = datetime.now(UTC) - timedelta(hours=2)
    stale = storage.claim_next("provision", "worker-1", long_ago)
    storage.claim_next("provision", "worker-2")

    abandoned = storage.find_abandoned_jobs("provision", datetime.now(UTC) - timedelta(minutes=5))
    assert [j.id for j in abandoned] == [stale.id]
    assert abandoned[0].claimed_by == "worker-1"
