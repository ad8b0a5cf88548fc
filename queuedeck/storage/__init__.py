from .base import JobStorage
from .memory_storage import MemoryStorage
from .redis_storage import RedisStorage
from .sql_storage import SqlStorage

import redis

from ..config import Settings


def create_storage(settings: Settings) -> JobStorage:
    if settings.storage == "redis":
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisStorage(redis_client=redis_client, queues=settings.queues)
    if settings.storage == "sql":
        return SqlStorage(connection_url=settings.sql_url, queues=settings.queues)
    return MemoryStorage(queues=settings.queues)


__all__ = ["JobStorage", "MemoryStorage", "RedisStorage", "SqlStorage", "create_storage"]
