"""Run the QueueDeck admin API and the delayed job scheduler."""
from __future__ import annotations

import argparse
import os

import uvicorn

from queuedeck.client import QueueClient
from queuedeck.config import STORAGE_BACKENDS, Settings
from queuedeck.dashboard import create_app
from queuedeck.log import configure_logging
from queuedeck.server.scheduler import DelayedJobScheduler


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the QueueDeck admin API")
    parser.add_argument(
        "--storage",
        choices=STORAGE_BACKENDS,
        default=os.getenv("QUEUEDECK_STORAGE", "memory"),
        help="Storage backend to use (env: QUEUEDECK_STORAGE).",
    )
    parser.add_argument(
        "--redis-url",
        default=os.getenv("QUEUEDECK_REDIS_URL", "redis://localhost:6379/0"),
        help="Redis URL for the redis backend (env: QUEUEDECK_REDIS_URL).",
    )
    parser.add_argument(
        "--sql-url",
        default=os.getenv("QUEUEDECK_SQL_URL", "sqlite:///queuedeck.db"),
        help="SQLAlchemy URL for the sql backend (env: QUEUEDECK_SQL_URL).",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--debug", action="store_true")
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = Settings.from_env()
    settings.storage = args.storage
    settings.redis_url = args.redis_url
    settings.sql_url = args.sql_url
    configure_logging(settings.log_level)

    client = QueueClient.from_settings(settings)
    scheduler = DelayedJobScheduler(client, settings.scheduler_interval_seconds)
    scheduler.start()
    try:
        uvicorn.run(create_app(client, settings, debug=args.debug), host=args.host, port=args.port)
    finally:
        scheduler.stop()
        client.storage.close()


if __name__ == "__main__":
    main()
