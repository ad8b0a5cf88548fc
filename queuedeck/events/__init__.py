from .bus import EventBus, QueueEvent, Subscription
from .redis_bus import RedisEventBus

import redis

from ..config import Settings


def create_event_bus(settings: Settings) -> EventBus:
    if settings.storage == "redis":
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisEventBus(redis_client, buffer_size=settings.event_buffer_size)
    return EventBus(buffer_size=settings.event_buffer_size)


__all__ = ["EventBus", "QueueEvent", "RedisEventBus", "Subscription", "create_event_bus"]
