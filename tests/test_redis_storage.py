import uuid

import pytest
import redis

from queuedeck.common.states import JobState, WaitingState
from queuedeck.storage.redis_storage import RedisStorage


def test_redis_storage_decodes_responses_from_plain_client(redis_client):
    plain = redis.Redis(host="localhost", port=6379, db=0)
    prefix = f"queuedeck-test-{uuid.uuid4().hex[:8]}"
    storage = RedisStorage(redis_client=plain, prefix=prefix, queues=["provision"])
    try:
        job = storage.add_job("provision", "provision_server", {"a": 1}, WaitingState())
        stored = storage.get_job("provision", job.id)
        assert stored.data == {"a": 1}
        assert stored.state is JobState.WAITING
        assert [q.name for q in storage.list_queues()] == ["provision"]
    finally:
        for key in redis_client.scan_iter(f"{prefix}:*"):
            redis_client.delete(key)
        plain.close()


def test_redis_storage_key_layout(redis_storage, redis_client):
    job = redis_storage.add_job("provision", "provision_server", {}, WaitingState())
    prefix = redis_storage.prefix
    assert redis_client.hget(f"{prefix}:queues", "provision") == "0"
    assert redis_client.zscore(f"{prefix}:provision:waiting", job.id) == job.id
    assert redis_client.hget(f"{prefix}:provision:job:{job.id}", "name") == "provision_server"

    redis_storage.claim_next("provision")
    assert redis_client.zcard(f"{prefix}:provision:waiting") == 0
    assert redis_client.zcard(f"{prefix}:provision:active") == 1
