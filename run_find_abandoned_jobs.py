"""CLI utility to list jobs that stayed active past the claim timeout."""

from __future__ import annotations

import argparse

from queuedeck.client import QueueClient
from queuedeck.config import Settings


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find abandoned QueueDeck jobs")
    parser.add_argument(
        "--queue",
        action="append",
        help="Queue to inspect; repeat for several. Defaults to every known queue.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=None,
        help="Report jobs active longer than this (default: QUEUEDECK_CLAIM_TIMEOUT_SECONDS).",
    )
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    client = QueueClient.from_settings(Settings.from_env())
    try:
        queues = args.queue or [info.name for info in client.list_queues()]
        found = 0
        for queue in queues:
            for job in client.find_abandoned_jobs(queue, args.timeout_seconds):
                found += 1
                print(f"- {queue}:{job.id} {job.name} claimed by {job.claimed_by} at {job.claimed_at}")
        if not found:
            print("No abandoned jobs found.")
    finally:
        client.storage.close()


if __name__ == "__main__":
    main()
