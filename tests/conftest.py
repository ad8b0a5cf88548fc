import uuid

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from queuedeck.storage.memory_storage import MemoryStorage
from queuedeck.storage.redis_storage import RedisStorage
from queuedeck.storage.sql_storage import SqlStorage


def make_sql_storage(**kwargs) -> SqlStorage:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    return SqlStorage(engine=engine, create_tables=True, **kwargs)


@pytest.fixture
def redis_client():
    r = redis.Redis(host="localhost", port=6379, db=0, decode_responses=True)
    try:
        r.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis server not running on localhost:6379")
    yield r
    r.close()


@pytest.fixture
def redis_storage(redis_client):
    prefix = f"queuedeck-test-{uuid.uuid4().hex[:8]}"
    storage = RedisStorage(redis_client=redis_client, prefix=prefix)
    yield storage
    for key in redis_client.scan_iter(f"{prefix}:*"):
        redis_client.delete(key)


@pytest.fixture(params=["memory", "sql", "redis"])
def storage(request):
    if request.param == "memory":
        return MemoryStorage()
    if request.param == "sql":
        return make_sql_storage()
    return request.getfixturevalue("redis_storage")
