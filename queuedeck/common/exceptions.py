# queuedeck/common/exceptions.py


class QueueDeckException(Exception):
    """Base exception for QueueDeck.

    Every subclass carries a ``kind`` (stable, machine readable) and the HTTP
    status the API layer answers with.
    """

    kind = "Error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "statusCode": self.status_code,
        }


class NotFound(QueueDeckException):
    kind = "NotFound"
    status_code = 404


class QueueNotFound(NotFound):
    def __init__(self, queue: str):
        super().__init__(f"Queue '{queue}' does not exist")
        self.queue = queue


class JobNotFound(NotFound):
    def __init__(self, queue: str, job_id: int):
        super().__init__(f"Job {job_id} not found in queue '{queue}'")
        self.queue = queue
        self.job_id = job_id


class InvalidStateTransition(QueueDeckException):
    kind = "InvalidStateTransition"
    status_code = 409


class InvalidArgument(QueueDeckException):
    kind = "InvalidArgument"
    status_code = 400


class Unauthorized(QueueDeckException):
    kind = "Unauthorized"
    status_code = 401


class Forbidden(QueueDeckException):
    kind = "Forbidden"
    status_code = 403


class Conflict(QueueDeckException):
    kind = "Conflict"
    status_code = 409


class JobLoadError(QueueDeckException):
    """Raised when no handler can be resolved for a job name."""

    kind = "JobLoadError"
