"""Unauthenticated service routes."""
from typing import Any, Dict

from litestar import Controller, get

from queuedeck.client import QueueClient


class CoreController(Controller):
    path = "/health"

    @get(sync_to_thread=True)
    def health(self, client: QueueClient) -> Dict[str, Any]:
        queues = client.list_queues()
        return {
            "status": "ok",
            "storage": client.storage.name,
            "queues": len(queues),
        }
