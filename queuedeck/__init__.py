from .client import QueueClient
from .common.exceptions import (
    Conflict,
    Forbidden,
    InvalidArgument,
    InvalidStateTransition,
    JobLoadError,
    JobNotFound,
    NotFound,
    QueueDeckException,
    QueueNotFound,
    Unauthorized,
)
from .common.job import Job, JobPage, Outcome, QueueInfo
from .common.states import JobState
from .config import Settings

__all__ = [
    "Conflict",
    "Forbidden",
    "InvalidArgument",
    "InvalidStateTransition",
    "Job",
    "JobLoadError",
    "JobNotFound",
    "JobPage",
    "JobState",
    "NotFound",
    "Outcome",
    "QueueClient",
    "QueueDeckException",
    "QueueInfo",
    "QueueNotFound",
    "Settings",
    "Unauthorized",
]
