"""Run a QueueDeck worker with example lifecycle handlers."""
from __future__ import annotations

import argparse
import logging
import os
import time

from queuedeck.client import QueueClient
from queuedeck.common.job import Job
from queuedeck.config import STORAGE_BACKENDS, Settings
from queuedeck.log import configure_logging
from queuedeck.server.worker import Worker

logger = logging.getLogger("queuedeck.worker")


def _lifecycle(action: str):
    def handler(job: Job):
        server = job.data.get("server_id", "unknown")
        logger.info(f"{action} server {server} (attempt {job.attempts_made})")
        time.sleep(float(job.data.get("duration", 0.5)))
        if job.data.get("fail"):
            raise RuntimeError(f"{action} failed for server {server}")
        return {"server_id": server, "action": action}

    return handler


HANDLERS = {
    f"{action}_server": _lifecycle(action)
    for action in ("provision", "start", "stop", "restart", "delete")
}


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a QueueDeck worker")
    parser.add_argument(
        "--storage",
        choices=STORAGE_BACKENDS,
        default=os.getenv("QUEUEDECK_STORAGE", "memory"),
        help="Storage backend to use (env: QUEUEDECK_STORAGE).",
    )
    parser.add_argument(
        "--queues",
        default=os.getenv("QUEUEDECK_QUEUES"),
        help="Comma separated queues to consume (env: QUEUEDECK_QUEUES).",
    )
    parser.add_argument("--poll-interval", type=float, default=1.0)
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = Settings.from_env()
    settings.storage = args.storage
    configure_logging(settings.log_level)

    queues = [q.strip() for q in args.queues.split(",")] if args.queues else settings.queues
    client = QueueClient.from_settings(settings)
    worker = Worker(
        client,
        HANDLERS,
        queues=queues,
        poll_interval=args.poll_interval,
        concurrency=settings.concurrency,
    )
    try:
        worker.run()
    finally:
        client.close()


if __name__ == "__main__":
    main()
