"""Wire format for jobs and queues returned by the admin API."""
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from queuedeck.common.job import Job, JobPage, QueueInfo


def epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def job_item(job: Job, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(UTC)
    delay = 0
    if job.delay_until is not None:
        delay = max(0, int((job.delay_until - now).total_seconds() * 1000))
    return {
        "id": job.id,
        "name": job.name,
        "data": job.data,
        "attemptsMade": job.attempts_made,
        "timestamp": epoch_ms(job.created_at),
        "processedOn": epoch_ms(job.processed_on),
        "finishedOn": epoch_ms(job.finished_on),
        "failedReason": job.failed_reason,
        "stacktrace": job.stacktrace,
        "state": job.state.value,
        # Milliseconds left until a delayed job is due
        "delay": delay,
        "returnvalue": job.return_value,
    }


def job_page(page: JobPage) -> Dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "items": [job_item(job, now) for job in page.items],
        "total": page.total,
        "page": page.page,
        "pageSize": page.page_size,
    }


def queue_item(info: QueueInfo) -> Dict[str, Any]:
    return {"name": info.name, "paused": info.paused}
