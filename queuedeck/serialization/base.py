# queuedeck/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping

from queuedeck.common.job import Job


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_job(self, job: Job) -> Dict[str, str]: ...

    @abstractmethod
    def deserialize_job(self, data: Mapping[str, str]) -> Job: ...

    @abstractmethod
    def serialize_data(self, data: Any) -> str: ...

    @abstractmethod
    def deserialize_data(self, data_str: str) -> Any: ...
