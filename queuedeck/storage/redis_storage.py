# queuedeck/storage/redis_storage.py
import logging
from datetime import datetime, UTC
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis

from .base import JobStorage
from ..common.exceptions import InvalidStateTransition, JobNotFound, QueueNotFound
from ..common.job import Job, QueueInfo
from ..common.states import ActiveState, BaseState, JobState, WaitingState
from ..common.transitions import apply_transition, new_job
from ..serialization.base import BaseSerializer
from ..serialization.json_serializer import JsonSerializer

logger = logging.getLogger(__name__)


_MIN_DATETIME = datetime.min.replace(tzinfo=UTC)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisStorage(JobStorage):
    """Redis-backed storage.

    Layout per queue ``q`` (prefix omitted):

    * ``queues``           hash of queue name -> "1" when paused, "0" otherwise
    * ``q:id``             id counter, only ever incremented
    * ``q:job:<id>``       job hash
    * ``q:<state>``        sorted set of job ids per state, scored by id
    * ``q:delayed-at``     sorted set of delayed job ids scored by due time (ms)

    Ids are allocated in enqueue order, so id order is creation order.
    Single-job changes run as WATCH/MULTI transactions on the job hash; claims
    and bulk removals watch the per-queue state sets.
    """

    name = "redis"

    def __init__(
        self,
        connection_pool=None,
        redis_client=None,
        serializer: Optional[BaseSerializer] = None,
        prefix: str = "queuedeck",
        queues: Optional[Iterable[str]] = None,
    ):
        if redis_client:
            connection_pool = redis_client.connection_pool
        if connection_pool:
            if not connection_pool.connection_kwargs.get("decode_responses"):
                # Key and field handling below works on str, not bytes
                connection_pool = redis.ConnectionPool(
                    connection_class=connection_pool.connection_class,
                    **{**connection_pool.connection_kwargs, "decode_responses": True},
                )
            self.redis_client = redis.Redis(connection_pool=connection_pool)
        else:
            self.redis_client = redis.Redis(
                host="localhost", port=6379, db=0, decode_responses=True
            )
        self.serializer = serializer or JsonSerializer()
        self.prefix = prefix

        # Removes every waiting and delayed job of a queue in one step
        self.drain_script = self.redis_client.register_script("""
            local job_prefix = ARGV[1]
            local removed = 0
            for i = 1, 2 do
                local ids = redis.call('ZRANGE', KEYS[i], 0, -1)
                for _, job_id in ipairs(ids) do
                    redis.call('DEL', job_prefix .. job_id)
                    removed = removed + 1
                end
                redis.call('DEL', KEYS[i])
            end
            redis.call('DEL', KEYS[3])
            return removed
        """)

        for queue in queues or []:
            self.register_queue(queue)

    # --- Keys ---

    @property
    def _queues_key(self) -> str:
        return f"{self.prefix}:queues"

    def _id_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:id"

    def _job_prefix(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:job:"

    def _job_key(self, queue: str, job_id: int) -> str:
        return f"{self._job_prefix(queue)}{job_id}"

    def _state_key(self, queue: str, state: JobState) -> str:
        return f"{self.prefix}:{queue}:{state.value}"

    def _delayed_at_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:delayed-at"

    # --- Helpers ---

    def _require_queue(self, queue: str) -> None:
        if not self.redis_client.hexists(self._queues_key, queue):
            raise QueueNotFound(queue)

    def _read_job(self, conn, queue: str, job_id: int) -> Optional[Job]:
        job_data = conn.hgetall(self._job_key(queue, job_id))
        if not job_data:
            return None
        return self.serializer.deserialize_job(job_data)

    def _read_jobs(self, queue: str, job_ids: List[Any]) -> List[Job]:
        with self.redis_client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(queue, int(job_id)))
            rows = pipe.execute()
        return [self.serializer.deserialize_job(row) for row in rows if row]

    def _write_transition(self, pipe, old: Job, new: Job) -> None:
        queue = new.queue
        pipe.hset(self._job_key(queue, new.id), mapping=self.serializer.serialize_job(new))
        if old.state is not new.state:
            pipe.zrem(self._state_key(queue, old.state), new.id)
            pipe.zadd(self._state_key(queue, new.state), {new.id: new.id})
        if old.state is JobState.DELAYED:
            pipe.zrem(self._delayed_at_key(queue), new.id)
        if new.state is JobState.DELAYED:
            pipe.zadd(self._delayed_at_key(queue), {new.id: _ms(new.delay_until)})

    # --- Queues ---

    def register_queue(self, queue: str) -> QueueInfo:
        self.redis_client.hsetnx(self._queues_key, queue, "0")
        return self.get_queue(queue)

    def get_queue(self, queue: str) -> Optional[QueueInfo]:
        flag = self.redis_client.hget(self._queues_key, queue)
        if flag is None:
            return None
        return QueueInfo(name=queue, paused=flag == "1")

    def list_queues(self) -> List[QueueInfo]:
        flags = self.redis_client.hgetall(self._queues_key)
        return [QueueInfo(name=name, paused=flags[name] == "1") for name in sorted(flags)]

    def set_paused(self, queue: str, paused: bool) -> QueueInfo:
        self._require_queue(queue)
        self.redis_client.hset(self._queues_key, queue, "1" if paused else "0")
        return QueueInfo(name=queue, paused=paused)

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
        job_id = self.redis_client.incr(self._id_key(queue))
        job = new_job(
            job_id, queue, name, data, state, max_attempts=max_attempts, backoff_ms=backoff_ms
        )
        with self.redis_client.pipeline() as pipe:
            pipe.hsetnx(self._queues_key, queue, "0")
            pipe.hset(self._job_key(queue, job.id), mapping=self.serializer.serialize_job(job))
            pipe.zadd(self._state_key(queue, job.state), {job.id: job.id})
            if job.state is JobState.DELAYED:
                pipe.zadd(self._delayed_at_key(queue), {job.id: _ms(job.delay_until)})
            pipe.execute()
        return job

    def get_job(self, queue: str, job_id: int) -> Optional[Job]:
        self._require_queue(queue)
        return self._read_job(self.redis_client, queue, job_id)

    def set_job_state(
        self,
        queue: str,
        job_id: int,
        state: BaseState,
        expected_old_state: Optional[JobState] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        self._require_queue(queue)

        def _transition(pipe) -> Job:
            job = self._read_job(pipe, queue, job_id)
            if job is None:
                raise JobNotFound(queue, job_id)
            if expected_old_state is not None and job.state is not expected_old_state:
                raise InvalidStateTransition(
                    f"Job {job_id} is {job.state.value}, expected {expected_old_state.value}"
                )
            updated = apply_transition(job, state, now)
            pipe.multi()
            self._write_transition(pipe, job, updated)
            return updated

        return self.redis_client.transaction(
            _transition, self._job_key(queue, job_id), value_from_callable=True
        )

    def remove_job(self, queue: str, job_id: int) -> bool:
        self._require_queue(queue)
        job_key = self._job_key(queue, job_id)

        def _remove(pipe) -> bool:
            state_name = pipe.hget(job_key, "state")
            if not state_name:
                return False
            pipe.multi()
            pipe.delete(job_key)
            pipe.zrem(self._state_key(queue, JobState(state_name)), job_id)
            pipe.zrem(self._delayed_at_key(queue), job_id)
            return True

        return self.redis_client.transaction(_remove, job_key, value_from_callable=True)

    # --- Worker dispatch ---

    def claim_next(
        self, queue: str, worker_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Optional[Job]:
        self._require_queue(queue)
        now = now or datetime.now(UTC)
        waiting_key = self._state_key(queue, JobState.WAITING)

        def _claim(pipe) -> Optional[Job]:
            if pipe.hget(self._queues_key, queue) == "1":
                return None
            head = pipe.zrange(waiting_key, 0, 0)
            if not head:
                return None
            job_id = int(head[0])
            pipe.watch(self._job_key(queue, job_id))
            job = self._read_job(pipe, queue, job_id)
            if job is None:
                logger.warning("Dropping dangling waiting entry %s in queue %s", job_id, queue)
                pipe.multi()
                pipe.zrem(waiting_key, job_id)
                return None
            claimed = apply_transition(job, ActiveState(worker_id), now)
            pipe.multi()
            self._write_transition(pipe, job, claimed)
            return claimed

        return self.redis_client.transaction(
            _claim, self._queues_key, waiting_key, value_from_callable=True
        )

    def promote_due(self, queue: str, now: Optional[datetime] = None) -> int:
        self._require_queue(queue)
        now = now or datetime.now(UTC)
        delayed_at_key = self._delayed_at_key(queue)

        def _promote(pipe) -> int:
            due_ids = pipe.zrangebyscore(delayed_at_key, "-inf", _ms(now))
            if not due_ids:
                return 0
            jobs = []
            for job_id in due_ids:
                job = self._read_job(pipe, queue, int(job_id))
                if job is not None and job.state is JobState.DELAYED:
                    jobs.append(job)
            pipe.multi()
            for job in jobs:
                self._write_transition(pipe, job, apply_transition(job, WaitingState(), now))
            return len(jobs)

        return self.redis_client.transaction(
            _promote, delayed_at_key, value_from_callable=True
        )

    # --- Bulk ---

    def drain(self, queue: str) -> int:
        self._require_queue(queue)
        removed = self.drain_script(
            keys=[
                self._state_key(queue, JobState.WAITING),
                self._state_key(queue, JobState.DELAYED),
                self._delayed_at_key(queue),
            ],
            args=[self._job_prefix(queue)],
        )
        return int(removed)

    def clean(
        self,
        queue: str,
        state: JobState,
        finished_before: Optional[datetime] = None,
        limit: int = 0,
    ) -> int:
        self._require_queue(queue)
        state_key = self._state_key(queue, state)

        def _clean(pipe) -> int:
            job_ids = [int(job_id) for job_id in pipe.zrange(state_key, 0, -1)]
            if finished_before is not None or limit > 0:
                finished = []
                for job_id in job_ids:
                    raw = pipe.hget(self._job_key(queue, job_id), "finished_on")
                    finished_on = datetime.fromisoformat(raw) if raw else None
                    if finished_before is None or (finished_on and finished_on <= finished_before):
                        finished.append((finished_on, job_id))
                finished.sort(key=lambda pair: (pair[0] or _MIN_DATETIME, pair[1]))
                if limit > 0:
                    finished = finished[:limit]
                job_ids = [job_id for _, job_id in finished]
            if not job_ids:
                return 0
            pipe.multi()
            for job_id in job_ids:
                pipe.delete(self._job_key(queue, job_id))
            pipe.zrem(state_key, *job_ids)
            return len(job_ids)

        return self.redis_client.transaction(_clean, state_key, value_from_callable=True)

    # --- Reads ---

    def list_jobs(
        self, queue: str, state: JobState, start: int, count: int
    ) -> Tuple[List[Job], int]:
        self._require_queue(queue)
        state_key = self._state_key(queue, state)
        with self.redis_client.pipeline() as pipe:
            pipe.zcard(state_key)
            pipe.zrevrange(state_key, start, start + count - 1)
            total, job_ids = pipe.execute()
        return self._read_jobs(queue, job_ids), int(total)

    def count_jobs(self, queue: str, state: JobState) -> int:
        self._require_queue(queue)
        return int(self.redis_client.zcard(self._state_key(queue, state)))

    def find_abandoned_jobs(self, queue: str, claimed_before: datetime) -> List[Job]:
        self._require_queue(queue)
        job_ids = self.redis_client.zrange(self._state_key(queue, JobState.ACTIVE), 0, -1)
        jobs = [
            job
            for job in self._read_jobs(queue, job_ids)
            if job.state is JobState.ACTIVE and job.claimed_at and job.claimed_at < claimed_before
        ]
        return sorted(jobs, key=lambda j: (j.claimed_at, j.id))

    def close(self) -> None:
        self.redis_client.close()
