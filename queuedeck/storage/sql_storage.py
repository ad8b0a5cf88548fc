# queuedeck/storage/sql_storage.py
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    DateTime,
    Engine,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

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
from queuedeck.serialization.base import BaseSerializer
from queuedeck.serialization.json_serializer import JsonSerializer
from queuedeck.storage.base import JobStorage

logger = logging.getLogger(__name__)

# Waiting rows read per claim attempt.
_CLAIM_BATCH = 10


class Base(DeclarativeBase):
    pass


class QueueModel(Base):
    __tablename__ = "queuedeck_queues"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    last_job_id: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class JobModel(Base):
    __tablename__ = "queuedeck_jobs"
    __table_args__ = (
        Index("ix_queuedeck_jobs_queue_state_created", "queue", "state", "created_at"),
    )

    queue: Mapped[str] = mapped_column(
        String(100), ForeignKey(QueueModel.name), primary_key=True
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(255))
    data: Mapped[str] = mapped_column(Text, default="{}")
    state: Mapped[str] = mapped_column(String(20), index=True)
    attempts_made: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=1)
    backoff_ms: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    processed_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_on: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delay_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_reason: Mapped[Optional[str]] = mapped_column(Text)
    stacktrace: Mapped[Optional[str]] = mapped_column(Text)
    return_value: Mapped[Optional[str]] = mapped_column(Text)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(128))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class SqlStorage(JobStorage):
    name = "sql"

    def __init__(
        self,
        connection_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        create_tables: bool = True,
        serializer: Optional[BaseSerializer] = None,
        queues: Optional[Iterable[str]] = None,
    ) -> None:
        if engine is None and connection_url is None:
            raise ValueError("connection_url or engine is required")
        self.engine = engine or create_engine(connection_url)
        self.serializer = serializer or JsonSerializer()
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_tables:
            Base.metadata.create_all(self.engine)

        self._supports_row_locks = self.engine.dialect.name in {
            "postgresql",
            "mysql",
            "mariadb",
        }

        for queue in queues or []:
            self.register_queue(queue)

    # --- Mapping ---

    def _job_from_model(self, model: JobModel) -> Job:
        return Job(
            id=model.id,
            queue=model.queue,
            name=model.name,
            state=JobState(model.state),
            data=self.serializer.deserialize_data(model.data) or {},
            attempts_made=model.attempts_made,
            max_attempts=model.max_attempts,
            backoff_ms=model.backoff_ms,
            created_at=_aware(model.created_at),
            processed_on=_aware(model.processed_on),
            finished_on=_aware(model.finished_on),
            delay_until=_aware(model.delay_until),
            failed_reason=model.failed_reason,
            stacktrace=self.serializer.deserialize_data(model.stacktrace),
            return_value=self.serializer.deserialize_data(model.return_value),
            claimed_by=model.claimed_by,
            claimed_at=_aware(model.claimed_at),
        )

    def _row_values(self, job: Job) -> Dict[str, Any]:
        return {
            "queue": job.queue,
            "id": job.id,
            "name": job.name,
            "data": self.serializer.serialize_data(job.data),
            "state": job.state.value,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "backoff_ms": job.backoff_ms,
            "created_at": job.created_at,
            "processed_on": job.processed_on,
            "finished_on": job.finished_on,
            "delay_until": job.delay_until,
            "failed_reason": job.failed_reason,
            "stacktrace": (
                self.serializer.serialize_data(job.stacktrace)
                if job.stacktrace is not None
                else None
            ),
            "return_value": (
                self.serializer.serialize_data(job.return_value)
                if job.return_value is not None
                else None
            ),
            "claimed_by": job.claimed_by,
            "claimed_at": job.claimed_at,
        }

    def _write_if_unchanged(self, session: Session, current: Job, updated: Job) -> bool:
        """Writes ``updated`` only if the row still holds ``current``'s state and attempts."""
        values = self._row_values(updated)
        del values["queue"], values["id"]
        result = session.execute(
            update(JobModel)
            .where(
                JobModel.queue == current.queue,
                JobModel.id == current.id,
                JobModel.state == current.state.value,
                JobModel.attempts_made == current.attempts_made,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _for_update(self, query, skip_locked: bool = False):
        if self._supports_row_locks:
            return query.with_for_update(skip_locked=skip_locked)
        return query

    def _require_queue(self, session: Session, queue: str) -> QueueModel:
        record = session.get(QueueModel, queue)
        if record is None:
            raise QueueNotFound(queue)
        return record

    def _lock_queue(self, session: Session, queue: str, create: bool = False) -> QueueModel:
        record = session.execute(
            self._for_update(select(QueueModel).where(QueueModel.name == queue))
        ).scalar_one_or_none()
        if record is not None:
            return record
        if not create:
            raise QueueNotFound(queue)
        record = QueueModel(
            name=queue, paused=False, last_job_id=0, created_at=datetime.now(UTC)
        )
        session.add(record)
        session.flush()
        return record

    def _lock_job(self, session: Session, queue: str, job_id: int) -> Optional[JobModel]:
        return session.execute(
            self._for_update(
                select(JobModel).where(JobModel.queue == queue, JobModel.id == job_id)
            )
        ).scalar_one_or_none()

    @staticmethod
    def _queue_info(record: QueueModel) -> QueueInfo:
        return QueueInfo(name=record.name, paused=bool(record.paused))

    # --- Queues ---

    def register_queue(self, queue: str) -> QueueInfo:
        try:
            with self._session_factory.begin() as session:
                return self._queue_info(self._lock_queue(session, queue, create=True))
        except IntegrityError:
            # Lost a creation race with another process; the row exists now.
            logger.debug("Queue %s was registered concurrently", queue)
            return self.get_queue(queue)

    def get_queue(self, queue: str) -> Optional[QueueInfo]:
        with self._session_factory() as session:
            record = session.get(QueueModel, queue)
            return self._queue_info(record) if record else None

    def list_queues(self) -> List[QueueInfo]:
        with self._session_factory() as session:
            rows = session.execute(select(QueueModel).order_by(QueueModel.name)).scalars()
            return [self._queue_info(row) for row in rows]

    def set_paused(self, queue: str, paused: bool) -> QueueInfo:
        with self._session_factory.begin() as session:
            record = self._lock_queue(session, queue)
            record.paused = paused
            return self._queue_info(record)

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
        if self.get_queue(queue) is None:
            self.register_queue(queue)
        with self._session_factory.begin() as session:
            # The counter UPDATE takes the write lock before the new id is read back.
            result = session.execute(
                update(QueueModel)
                .where(QueueModel.name == queue)
                .values(last_job_id=QueueModel.last_job_id + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise QueueNotFound(queue)
            job_id = session.execute(
                select(QueueModel.last_job_id).where(QueueModel.name == queue)
            ).scalar_one()
            job = new_job(
                job_id,
                queue,
                name,
                data,
                state,
                max_attempts=max_attempts,
                backoff_ms=backoff_ms,
            )
            session.add(JobModel(**self._row_values(job)))
        return job

    def get_job(self, queue: str, job_id: int) -> Optional[Job]:
        with self._session_factory() as session:
            self._require_queue(session, queue)
            model = session.get(JobModel, (queue, job_id))
            return self._job_from_model(model) if model else None

    def set_job_state(
        self,
        queue: str,
        job_id: int,
        state: BaseState,
        expected_old_state: Optional[JobState] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        with self._session_factory.begin() as session:
            self._require_queue(session, queue)
            model = self._lock_job(session, queue, job_id)
            if model is None:
                raise JobNotFound(queue, job_id)
            job = self._job_from_model(model)
            if expected_old_state is not None and job.state is not expected_old_state:
                raise InvalidStateTransition(
                    f"Job {job_id} is {job.state.value}, expected {expected_old_state.value}"
                )
            updated = apply_transition(job, state, now)
            if not self._write_if_unchanged(session, job, updated):
                current = session.execute(
                    select(JobModel.state).where(JobModel.queue == queue, JobModel.id == job_id)
                ).scalar_one_or_none()
                if current is None:
                    raise JobNotFound(queue, job_id)
                raise InvalidStateTransition(
                    f"Job {job_id} changed to {current} while moving it to {updated.state.value}"
                )
            return updated

    def remove_job(self, queue: str, job_id: int) -> bool:
        with self._session_factory.begin() as session:
            self._require_queue(session, queue)
            result = session.execute(
                delete(JobModel).where(JobModel.queue == queue, JobModel.id == job_id)
            )
            return result.rowcount == 1

    # --- Worker dispatch ---

    def claim_next(
        self, queue: str, worker_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[Job]:
        now = now or datetime.now(UTC)
        with self._session_factory.begin() as session:
            record = self._lock_queue(session, queue)
            if record.paused:
                return None
            while True:
                candidates = session.execute(
                    self._for_update(
                        select(JobModel)
                        .where(JobModel.queue == queue, JobModel.state == JobState.WAITING.value)
                        .order_by(JobModel.created_at, JobModel.id)
                        .limit(_CLAIM_BATCH),
                        skip_locked=True,
                    )
                ).scalars().all()
                if not candidates:
                    return None
                for model in candidates:
                    job = self._job_from_model(model)
                    claimed = apply_transition(job, ActiveState(worker_id), now)
                    if self._write_if_unchanged(session, job, claimed):
                        return claimed
                    logger.debug("Job %s:%s was claimed by another worker", queue, job.id)
                # Every candidate went elsewhere; look again.
                session.expire_all()

    def promote_due(self, queue: str, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(UTC)
        with self._session_factory.begin() as session:
            self._lock_queue(session, queue)
            rows = session.execute(
                self._for_update(
                    select(JobModel).where(
                        JobModel.queue == queue,
                        JobModel.state == JobState.DELAYED.value,
                        JobModel.delay_until <= now,
                    )
                )
            ).scalars().all()
            promoted = 0
            for model in rows:
                job = self._job_from_model(model)
                promoted_job = apply_transition(job, WaitingState(), now)
                if self._write_if_unchanged(session, job, promoted_job):
                    promoted += 1
            return promoted

    # --- Bulk ---

    def drain(self, queue: str) -> int:
        with self._session_factory.begin() as session:
            self._lock_queue(session, queue)
            result = session.execute(
                delete(JobModel).where(
                    JobModel.queue == queue,
                    JobModel.state.in_([s.value for s in PENDING_STATES]),
                )
            )
            return int(result.rowcount or 0)

    def clean(
        self,
        queue: str,
        state: JobState,
        finished_before: Optional[datetime] = None,
        limit: int = 0,
    ) -> int:
        with self._session_factory.begin() as session:
            self._lock_queue(session, queue)
            conditions = [JobModel.queue == queue, JobModel.state == state.value]
            if finished_before is not None:
                conditions.append(JobModel.finished_on <= finished_before)
            if limit > 0:
                job_ids = session.execute(
                    select(JobModel.id)
                    .where(*conditions)
                    .order_by(JobModel.finished_on, JobModel.id)
                    .limit(limit)
                ).scalars().all()
                if not job_ids:
                    return 0
                conditions.append(JobModel.id.in_(job_ids))
            result = session.execute(delete(JobModel).where(*conditions))
            return int(result.rowcount or 0)

    # --- Reads ---

    def list_jobs(
        self, queue: str, state: JobState, start: int, count: int
    ) -> Tuple[List[Job], int]:
        with self._session_factory() as session:
            self._require_queue(session, queue)
            total = session.execute(
                select(func.count())
                .select_from(JobModel)
                .where(JobModel.queue == queue, JobModel.state == state.value)
            ).scalar_one()
            rows = session.execute(
                select(JobModel)
                .where(JobModel.queue == queue, JobModel.state == state.value)
                .order_by(JobModel.created_at.desc(), JobModel.id.desc())
                .offset(start)
                .limit(count)
            ).scalars().all()
            return [self._job_from_model(row) for row in rows], int(total or 0)

    def count_jobs(self, queue: str, state: JobState) -> int:
        with self._session_factory() as session:
            self._require_queue(session, queue)
            result = session.execute(
                select(func.count())
                .select_from(JobModel)
                .where(JobModel.queue == queue, JobModel.state == state.value)
            ).scalar_one()
            return int(result or 0)

    def get_job_counts(self, queue: str) -> Dict[str, int]:
        with self._session_factory() as session:
            self._require_queue(session, queue)
            rows = session.execute(
                select(JobModel.state, func.count(JobModel.id))
                .where(JobModel.queue == queue)
                .group_by(JobModel.state)
            ).all()
            counts = {state.value: 0 for state in JobState}
            for state_name, count in rows:
                counts[state_name] = int(count)
            return counts

    def find_abandoned_jobs(self, queue: str, claimed_before: datetime) -> List[Job]:
        with self._session_factory() as session:
            self._require_queue(session, queue)
            rows = session.execute(
                select(JobModel)
                .where(
                    JobModel.queue == queue,
                    JobModel.state == JobState.ACTIVE.value,
                    JobModel.claimed_at.is_not(None),
                    JobModel.claimed_at < claimed_before,
                )
                .order_by(JobModel.claimed_at, JobModel.id)
            ).scalars().all()
            return [self._job_from_model(row) for row in rows]

    def close(self) -> None:
        self.engine.dispose()
