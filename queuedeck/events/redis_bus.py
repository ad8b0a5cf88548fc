# queuedeck/events/redis_bus.py
import json
import logging
from typing import Optional

import redis
from redis.client import PubSub, PubSubWorkerThread

from queuedeck.events.bus import EventBus, QueueEvent

logger = logging.getLogger(__name__)


class RedisEventBus(EventBus):
    """Relays change events between processes over a Redis channel.

    ``publish`` only writes to the channel; a pub/sub thread started by
    ``start`` feeds every message, including this process's own, to the local
    subscribers.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        channel: str = "queuedeck:events",
        buffer_size: int = 1000,
    ):
        super().__init__(buffer_size=buffer_size)
        self.redis_client = redis_client
        self.channel = channel
        self._pubsub: Optional[PubSub] = None
        self._thread: Optional[PubSubWorkerThread] = None

    def publish(self, queue: str) -> None:
        self.redis_client.publish(self.channel, QueueEvent(queue=queue).to_json())

    def _on_message(self, message: dict) -> None:
        payload = message.get("data")
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        try:
            event = QueueEvent.from_json(payload)
        except (TypeError, ValueError, KeyError, json.JSONDecodeError):
            logger.warning("Ignoring malformed event on %s: %r", self.channel, payload)
            return
        self._dispatch(event)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: self._on_message})
        self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        logger.info("Listening for queue events on redis channel %s", self.channel)

    def close(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        super().close()
