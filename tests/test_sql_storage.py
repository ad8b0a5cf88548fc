import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta

import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")
from sqlalchemy import create_engine, select
from sqlalchemy.pool import StaticPool

from queuedeck.common.exceptions import InvalidStateTransition
from queuedeck.common.states import DelayedState, FailedState, JobState, WaitingState
from queuedeck.storage.sql_storage import JobModel, QueueModel, SqlStorage


def _make_engine():
    return create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def test_sql_storage_registers_default_queues():
    storage = SqlStorage(engine=_make_engine(), queues=["provision", "start"])
    assert [q.name for q in storage.list_queues()] == ["provision", "start"]
    storage.register_queue("provision")
    assert len(storage.list_queues()) == 2


def test_sql_storage_returns_aware_datetimes():
    storage = SqlStorage(engine=_make_engine())
    due = datetime.now(UTC) + timedelta(minutes=10)
    job = storage.add_job("start", "start_server", {"server_id": 1}, DelayedState(due))

    stored = storage.get_job("start", job.id)
    assert stored.created_at.tzinfo is not None
    assert stored.delay_until == due
    assert stored.state is JobState.DELAYED


def test_sql_storage_state_survives_new_instance():
    engine = _make_engine()
    first = SqlStorage(engine=engine)
    job = first.add_job("stop", "stop_server", {}, WaitingState())
    claimed = first.claim_next("stop", "worker-1")
    first.set_job_state("stop", claimed.id, FailedState("boom", ["Traceback"]))

    second = SqlStorage(engine=engine, create_tables=False)
    stored = second.get_job("stop", job.id)
    assert stored.state is JobState.FAILED
    assert stored.stacktrace == ["Traceback"]
    assert stored.claimed_by == "worker-1"
    assert second.add_job("stop", "stop_server", {}, WaitingState()).id == 2


def test_sql_storage_counter_survives_removal():
    engine = _make_engine()
    storage = SqlStorage(engine=engine)
    job = storage.add_job("delete", "delete_server", {}, WaitingState())
    storage.remove_job("delete", job.id)

    with storage._session_factory() as session:
        assert session.execute(select(JobModel)).scalars().all() == []
        assert session.get(QueueModel, "delete").last_job_id == 1
    assert storage.add_job("delete", "delete_server", {}, WaitingState()).id == 2


def test_sql_storage_requires_url_or_engine():
    with pytest.raises(ValueError):
        SqlStorage()


@pytest.fixture
def file_storage(tmp_path):
    # Each thread gets its own connection, as with a real SQLite file.
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'queuedeck.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    storage = SqlStorage(engine=engine, queues=["provision"])
    yield storage
    storage.close()


@pytest.fixture
def slow_reads(monkeypatch):
    """Widens the gap between reading a job and writing it back."""
    original = SqlStorage._job_from_model

    def _slow(self, model):
        job = original(self, model)
        time.sleep(0.05)
        return job

    monkeypatch.setattr(SqlStorage, "_job_from_model", _slow)


def _in_parallel(count, target):
    barrier = threading.Barrier(count)

    def run(_):
        barrier.wait()
        try:
            return target()
        except InvalidStateTransition as e:
            return e

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(run, range(count)))


def test_sqlite_concurrent_claims_of_one_job_have_one_winner(file_storage, slow_reads):
    file_storage.add_job("provision", "provision_server", {}, WaitingState())

    results = _in_parallel(2, lambda: file_storage.claim_next("provision", "worker"))

    claimed = [job for job in results if job is not None]
    assert len(claimed) == 1
    stored = file_storage.get_job("provision", 1)
    assert stored.state is JobState.ACTIVE
    assert stored.attempts_made == 1


def test_sqlite_concurrent_claims_hand_out_each_job_once(file_storage):
    for i in range(40):
        file_storage.add_job("provision", "provision_server", {"n": i}, WaitingState())

    def claim_all():
        claimed = []
        while True:
            job = file_storage.claim_next("provision", "worker")
            if job is None:
                return claimed
            claimed.append(job.id)

    results = _in_parallel(4, claim_all)

    ids = [job_id for batch in results for job_id in batch]
    assert sorted(ids) == list(range(1, 41))
    jobs, total = file_storage.list_jobs("provision", JobState.ACTIVE, 0, 100)
    assert total == 40
    assert {job.attempts_made for job in jobs} == {1}


def test_sqlite_concurrent_adds_get_distinct_ids(file_storage):
    def add_some():
        return [
            file_storage.add_job("provision", "provision_server", {}, WaitingState()).id
            for _ in range(10)
        ]

    results = _in_parallel(4, add_some)

    ids = [job_id for batch in results for job_id in batch]
    assert sorted(ids) == list(range(1, 41))


def test_sqlite_concurrent_adds_to_new_queue(file_storage):
    results = _in_parallel(
        3, lambda: file_storage.add_job("restart", "restart_server", {}, WaitingState()).id
    )

    assert sorted(results) == [1, 2, 3]
    assert file_storage.count_jobs("restart", JobState.WAITING) == 3


def test_sqlite_concurrent_retry_succeeds_once(file_storage, slow_reads):
    file_storage.add_job("provision", "provision_server", {}, WaitingState())
    claimed = file_storage.claim_next("provision", "worker")
    file_storage.set_job_state("provision", claimed.id, FailedState("boom", None))

    results = _in_parallel(
        3,
        lambda: file_storage.set_job_state(
            "provision", claimed.id, WaitingState(), expected_old_state=JobState.FAILED
        ),
    )

    retried = [r for r in results if not isinstance(r, InvalidStateTransition)]
    assert len(retried) == 1
    assert retried[0].state is JobState.WAITING
    assert file_storage.get_job("provision", claimed.id).state is JobState.WAITING


def test_sqlite_promote_counts_only_rows_it_moved(file_storage, slow_reads):
    due = datetime.now(UTC) - timedelta(seconds=1)
    file_storage.add_job("provision", "provision_server", {}, DelayedState(due))

    results = _in_parallel(2, lambda: file_storage.promote_due("provision"))

    assert sorted(results) == [0, 1]
    assert file_storage.get_job("provision", 1).state is JobState.WAITING
