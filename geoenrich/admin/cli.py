"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from geoenrich.observability.log import configure_logging
from geoenrich.orchestrator.queue import read_jobs
from geoenrich.storage.writers import aggregate_locations, summarise_updates


def cmd_queue(args: argparse.Namespace) -> None:
    jobs = read_jobs(Path(args.queue))
    rows = [
        {
            "job_id": job.job_id,
            "record_id": job.record_id,
            "ip_address": job.ip_address,
            "attempts": job.attempts,
            "last_error": job.last_error,
            "created_at": job.created_at.isoformat(),
        }
        for job in jobs
    ]
    if args.record_id:
        rows = [row for row in rows if row["record_id"] == args.record_id]
    errors = Counter(row["last_error"] for row in rows if row["last_error"])
    print(json.dumps({"jobs": rows, "errors": dict(errors)}, indent=2))


def cmd_updates(args: argparse.Namespace) -> None:
    print(json.dumps(summarise_updates(Path(args.updates)), indent=2))


def cmd_locations(args: argparse.Namespace) -> None:
    if (args.start is None) != (args.end is None):
        raise SystemExit("--start and --end must be given together")
    print(json.dumps(aggregate_locations(Path(args.updates), start=args.start, end=args.end), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="geoenrich.admin.cli", description="Administration commands")
    sub = parser.add_subparsers(dest="command", required=True)

    queue = sub.add_parser("queue", help="List jobs still held by the durable queue")
    queue.add_argument("--queue", default="data/queue/location-jobs.jsonl")
    queue.add_argument("--record-id")

    updates = sub.add_parser("updates", help="Summarise delivered locations by provider")
    updates.add_argument("--updates", default="data/updates/locations.jsonl")

    locations = sub.add_parser("locations", help="Aggregate delivered locations per coordinate")
    locations.add_argument("--updates", default="data/updates/locations.jsonl")
    locations.add_argument("--start", type=datetime.fromisoformat, help="ISO timestamp; inclusive lower bound on createdAt")
    locations.add_argument("--end", type=datetime.fromisoformat, help="ISO timestamp; inclusive upper bound on createdAt")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "queue":
        cmd_queue(args)
        return
    if args.command == "updates":
        cmd_updates(args)
        return
    if args.command == "locations":
        cmd_locations(args)
        return


if __name__ == "__main__":
    main()
