# queuedeck/serialization/json_serializer.py
import json
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from queuedeck.common.job import Job
from queuedeck.common.states import JobState
from queuedeck.serialization.base import BaseSerializer

_DATETIME_FIELDS = ("created_at", "processed_on", "finished_on", "delay_until", "claimed_at")
_INT_FIELDS = ("id", "attempts_made", "max_attempts", "backoff_ms")
_JSON_FIELDS = ("data", "stacktrace", "return_value")


class JsonSerializer(BaseSerializer):
    """Flattens jobs into string mappings (Redis hashes) and JSON text."""

    def serialize_job(self, job: Job) -> Dict[str, str]:
        job_dict: Dict[str, str] = {}
        for key, value in job.__dict__.items():
            if key in _JSON_FIELDS:
                job_dict[key] = self.serialize_data(value)
            elif value is None:
                job_dict[key] = ""
            elif isinstance(value, datetime):
                job_dict[key] = value.isoformat()
            elif isinstance(value, JobState):
                job_dict[key] = value.value
            else:
                job_dict[key] = str(value)
        return job_dict

    def deserialize_job(self, data: Mapping[str, str]) -> Job:
        job_dict: Dict[str, Any] = {}
        for key, value in data.items():
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            if key in _DATETIME_FIELDS:
                job_dict[key] = _parse_datetime(value)
            elif key in _INT_FIELDS:
                job_dict[key] = int(value)
            elif key in _JSON_FIELDS:
                job_dict[key] = self.deserialize_data(value)
            elif key == "state":
                job_dict[key] = JobState(value)
            else:
                job_dict[key] = value or None
        if job_dict.get("data") is None:
            job_dict["data"] = {}
        return Job(**job_dict)

    def serialize_data(self, data: Any) -> str:
        return json.dumps(data, default=str)

    def deserialize_data(self, data_str: str) -> Any:
        if not data_str:
            return None
        return json.loads(data_str)


def _parse_datetime(value: str) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
