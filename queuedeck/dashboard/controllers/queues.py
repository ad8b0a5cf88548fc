"""Admin routes for inspecting and operating queues."""
from typing import Any, Dict, List, Optional

from litestar import Controller, get, post
from litestar.datastructures import State
from litestar.params import Parameter
from litestar.response import ServerSentEvent

from queuedeck.client import QueueClient
from queuedeck.dashboard.auth import operator_guard
from queuedeck.dashboard.schemas import job_item, job_page, queue_item
from queuedeck.dashboard.sse import stream_queue_events


class QueuesController(Controller):
    path = "/admin/queues"
    guards = [operator_guard]

    @get(sync_to_thread=True)
    def list_queues(self, client: QueueClient) -> List[Dict[str, Any]]:
        return [queue_item(info) for info in client.list_queues()]

    @get("/events")
    async def events(self, client: QueueClient, state: State) -> ServerSentEvent:
        return ServerSentEvent(stream_queue_events(client.bus, state.settings.sse_ping_seconds))

    @get("/{queue:str}/jobs", sync_to_thread=True)
    def list_jobs(
        self,
        client: QueueClient,
        queue: str,
        job_state: str = Parameter(query="state", default="waiting"),
        page: int = Parameter(query="page", default=1),
        page_size: Optional[int] = Parameter(query="pageSize", default=None),
    ) -> Dict[str, Any]:
        return job_page(client.list_jobs(queue, job_state, page=page, page_size=page_size))

    @get("/{queue:str}/counts", sync_to_thread=True)
    def job_counts(self, client: QueueClient, queue: str) -> Dict[str, int]:
        return client.get_job_counts(queue)

    @get("/{queue:str}/{job_id:int}", sync_to_thread=True)
    def job_details(self, client: QueueClient, queue: str, job_id: int) -> Dict[str, Any]:
        return job_item(client.get_job(queue, job_id))

    @post("/{queue:str}/pause", status_code=200, sync_to_thread=True)
    def pause(self, client: QueueClient, queue: str) -> Dict[str, Any]:
        client.pause(queue)
        return {"ok": True}

    @post("/{queue:str}/resume", status_code=200, sync_to_thread=True)
    def resume(self, client: QueueClient, queue: str) -> Dict[str, Any]:
        client.resume(queue)
        return {"ok": True}

    @post("/{queue:str}/drain", status_code=200, sync_to_thread=True)
    def drain(self, client: QueueClient, queue: str) -> Dict[str, Any]:
        return {"removed": client.drain(queue)}

    @post("/{queue:str}/clean", status_code=200, sync_to_thread=True)
    def clean(
        self,
        client: QueueClient,
        queue: str,
        job_state: str = Parameter(query="state", default="completed"),
        grace_ms: int = Parameter(query="grace", default=0),
        limit: int = Parameter(query="limit", default=0),
    ) -> Dict[str, Any]:
        return {"removed": client.clean(queue, job_state, grace_ms=grace_ms, limit=limit)}

    @post("/{queue:str}/{job_id:int}/retry", status_code=200, sync_to_thread=True)
    def retry_job(self, client: QueueClient, queue: str, job_id: int) -> Dict[str, Any]:
        client.retry_job(queue, job_id)
        return {"ok": True}

    @post("/{queue:str}/{job_id:int}/promote", status_code=200, sync_to_thread=True)
    def promote_job(self, client: QueueClient, queue: str, job_id: int) -> Dict[str, Any]:
        client.promote_job(queue, job_id)
        return {"ok": True}

    @post("/{queue:str}/{job_id:int}/remove", status_code=200, sync_to_thread=True)
    def remove_job(self, client: QueueClient, queue: str, job_id: int) -> Dict[str, Any]:
        return {"ok": True, "removed": client.remove_job(queue, job_id)}
