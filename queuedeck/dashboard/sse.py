"""Server-sent event stream of queue change notifications."""
import logging
from typing import AsyncGenerator

from litestar.response import ServerSentEventMessage

from queuedeck.events.bus import EventBus

logger = logging.getLogger(__name__)


async def stream_queue_events(
    bus: EventBus, ping_seconds: float
) -> AsyncGenerator[ServerSentEventMessage, None]:
    """Yields one ``data: {"queue": ...}`` message per change, with ping comments while idle."""
    subscription = bus.subscribe()
    try:
        while not subscription.closed:
            event = await subscription.get(timeout=ping_seconds)
            if event is None:
                if subscription.closed:
                    break
                yield ServerSentEventMessage(comment="ping")
                continue
            yield ServerSentEventMessage(data=event.to_json())
    finally:
        subscription.close()
        logger.debug("SSE client disconnected")
