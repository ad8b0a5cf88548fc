# queuedeck/config.py
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from queuedeck.common.exceptions import InvalidArgument

DEFAULT_QUEUES = ["provision", "start", "stop", "restart", "delete"]
STORAGE_BACKENDS = ("memory", "redis", "sql")
# Jobs each queue runs at once in one worker process.
DEFAULT_CONCURRENCY = {"provision": 3, "start": 10, "stop": 10, "restart": 5, "delete": 5}


def _env_int(environ: Mapping[str, str], key: str, default: int, minimum: int = 0) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidArgument(f"{key} must be an integer, got '{raw}'") from None
    if value < minimum:
        raise InvalidArgument(f"{key} must be >= {minimum}, got {value}")
    return value


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise InvalidArgument(f"{key} must be a number, got '{raw}'") from None
    if value <= 0:
        raise InvalidArgument(f"{key} must be positive, got {value}")
    return value


def _env_list(environ: Mapping[str, str], key: str, default: List[str]) -> List[str]:
    raw = environ.get(key)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_concurrency(environ: Mapping[str, str], queues: List[str]) -> Dict[str, int]:
    """Per-queue thread counts from ``QUEUEDECK_<QUEUE>_CONCURRENCY``."""
    concurrency = {}
    for queue in queues:
        key = "QUEUEDECK_" + re.sub(r"[^A-Z0-9]", "_", queue.upper()) + "_CONCURRENCY"
        concurrency[queue] = _env_int(environ, key, DEFAULT_CONCURRENCY.get(queue, 1), minimum=1)
    return concurrency


def parse_api_tokens(raw: Optional[str]) -> Dict[str, str]:
    """Parse ``token:role,token:role`` into a token -> role mapping."""
    tokens: Dict[str, str] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        token, sep, role = entry.rpartition(":")
        if not sep or not token or not role:
            raise InvalidArgument("QUEUEDECK_API_TOKENS entries must look like 'token:role'")
        tokens[token] = role.strip().lower()
    return tokens


@dataclass
class Settings:
    storage: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    sql_url: str = "sqlite:///queuedeck.db"
    queues: List[str] = field(default_factory=lambda: list(DEFAULT_QUEUES))
    concurrency: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CONCURRENCY))

    max_attempts: int = 1
    backoff_ms: int = 5000
    # How long a claimed job may stay active before it counts as abandoned
    claim_timeout_seconds: int = 300

    page_size: int = 20
    max_page_size: int = 200

    sse_ping_seconds: float = 25.0
    event_buffer_size: int = 1000
    scheduler_interval_seconds: float = 1.0

    api_tokens: Dict[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    def __post_init__(self):
        self.storage = self.storage.strip().lower()
        if self.storage not in STORAGE_BACKENDS:
            raise InvalidArgument(
                f"storage must be one of {', '.join(STORAGE_BACKENDS)}, got '{self.storage}'"
            )
        if any(count < 1 for count in self.concurrency.values()):
            raise InvalidArgument("concurrency must be at least 1 for every queue")
        if self.max_attempts < 1:
            raise InvalidArgument("max_attempts must be at least 1")
        if not 1 <= self.page_size <= self.max_page_size:
            raise InvalidArgument("page_size must be between 1 and max_page_size")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        queues = _env_list(env, "QUEUEDECK_QUEUES", DEFAULT_QUEUES)
        return cls(
            storage=env.get("QUEUEDECK_STORAGE", "memory"),
            redis_url=env.get("QUEUEDECK_REDIS_URL", "redis://localhost:6379/0"),
            sql_url=env.get("QUEUEDECK_SQL_URL", "sqlite:///queuedeck.db"),
            queues=queues,
            concurrency=_env_concurrency(env, queues),
            max_attempts=_env_int(env, "QUEUEDECK_MAX_ATTEMPTS", 1, minimum=1),
            backoff_ms=_env_int(env, "QUEUEDECK_BACKOFF_MS", 5000),
            claim_timeout_seconds=_env_int(env, "QUEUEDECK_CLAIM_TIMEOUT_SECONDS", 300, minimum=1),
            page_size=_env_int(env, "QUEUEDECK_PAGE_SIZE", 20, minimum=1),
            max_page_size=_env_int(env, "QUEUEDECK_MAX_PAGE_SIZE", 200, minimum=1),
            sse_ping_seconds=_env_float(env, "QUEUEDECK_SSE_PING_SECONDS", 25.0),
            event_buffer_size=_env_int(env, "QUEUEDECK_EVENT_BUFFER_SIZE", 1000, minimum=1),
            scheduler_interval_seconds=_env_float(
                env, "QUEUEDECK_SCHEDULER_INTERVAL_SECONDS", 1.0
            ),
            api_tokens=parse_api_tokens(env.get("QUEUEDECK_API_TOKENS")),
            log_level=env.get("QUEUEDECK_LOG_LEVEL", "INFO").upper(),
        )
