"""Command-line entrypoints for the IP geolocation enrichment service."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import tomllib
from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop is unavailable on Windows
    uvloop = None

from geoenrich.fetch.session import create_http_client
from geoenrich.observability.log import configure_logging
from geoenrich.observability.metrics import MetricsRegistry, record_duration
from geoenrich.orchestrator.jobs import LocationJob
from geoenrich.orchestrator.queue import JobQueue, read_jobs
from geoenrich.orchestrator.worker import LocationWorker
from geoenrich.resolve.cache import LocationCache
from geoenrich.resolve.providers import default_providers
from geoenrich.resolve.resolver import GeoResolver
from geoenrich.storage.writers import JsonlLocationSink

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


def load_settings(path: Path) -> Dict[str, object]:
    """Read the TOML configuration file."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise SystemExit(f"Failed to load settings from {path}: {exc}")


def google_api_key(settings: Dict[str, object]) -> str:
    env_name = settings.get("providers", {}).get("google_api_key_env", "GOOGLE_MAPS_API_KEY")
    return os.environ.get(env_name, "")


def build_resolver(
    client: httpx.AsyncClient,
    settings: Dict[str, object],
    metrics: MetricsRegistry,
) -> GeoResolver:
    """Wire the default provider chain to a fresh process-scoped cache."""
    providers = default_providers(client, google_api_key=google_api_key(settings))
    return GeoResolver(providers, LocationCache(), metrics)


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="geoenrich", description="IP geolocation enrichment")
    sub = parser.add_subparsers(dest="command", required=True)

    lookup = sub.add_parser("lookup", help="Resolve a single IP address and print the location")
    lookup.add_argument("--ip", required=True, help="IP address, optionally ::ffff: prefixed")

    enqueue = sub.add_parser("enqueue", help="Persist a location job for a record")
    enqueue.add_argument("--record-id", required=True, help="Identifier of the record to update")
    enqueue.add_argument("--ip", default="", help="IP address captured for the record")

    drain = sub.add_parser("drain", help="Process the queued jobs until none remain")
    drain.add_argument("--concurrency", type=int, help="Number of concurrent workers")
    drain.add_argument("--updates", help="Override the JSONL file receiving updates")

    sub.add_parser("status", help="Summarise the persisted queue")

    return parser


def _queue_path(settings: Dict[str, object]) -> Path:
    return Path(settings["queue"]["path"])


async def run_lookup(
    args: argparse.Namespace,
    settings: Dict[str, object],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Resolve one address and print the result as JSON."""
    metrics = MetricsRegistry()
    http = settings["http"]
    async with create_http_client(
        user_agent=http["user_agent"],
        timeout=http["timeout_seconds"],
        max_connections=http["max_connections"],
        transport=transport,
    ) as client:
        resolver = build_resolver(client, settings, metrics)
        record = await resolver.resolve(args.ip)
    print(json.dumps({"ip": args.ip, "location": record.to_payload() if record else None}, indent=2))


def run_enqueue(args: argparse.Namespace, settings: Dict[str, object]) -> LocationJob:
    """Append a job to the durable queue without processing it."""
    queue = JobQueue(path=_queue_path(settings))
    job = LocationJob(
        record_id=args.record_id,
        ip_address=args.ip,
        max_attempts=int(settings["queue"].get("max_attempts", 3)),
    )
    queue.put_nowait(job)
    print(json.dumps({"job_id": job.job_id, "record_id": job.record_id, "pending": len(queue)}, indent=2))
    return job


async def run_drain(
    args: argparse.Namespace,
    settings: Dict[str, object],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, int]:
    """Work through the durable queue, writing resolved locations to the sink."""
    queue_cfg = settings["queue"]
    http = settings["http"]
    storage = settings["storage"]
    metrics = MetricsRegistry()
    updates_path = Path(getattr(args, "updates", None) or storage["updates_path"])
    concurrency = getattr(args, "concurrency", None) or int(queue_cfg.get("concurrency", 1))
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")

    queue = JobQueue(path=_queue_path(settings))
    with record_duration(metrics, "drain_duration_ms"):
        async with create_http_client(
            user_agent=http["user_agent"],
            timeout=http["timeout_seconds"],
            max_connections=http["max_connections"],
            transport=transport,
        ) as client:
            worker = LocationWorker(
                queue=queue,
                resolver=build_resolver(client, settings, metrics),
                update=JsonlLocationSink(updates_path),
                metrics=metrics,
                base_delay=float(queue_cfg.get("base_delay_seconds", 2.0)),
                max_attempts=int(queue_cfg.get("max_attempts", 3)),
                job_timeout=queue_cfg.get("job_timeout_seconds"),
            )
            await worker.drain(concurrency=concurrency)

    metrics.export(path=Path(storage["metrics_dir"]) / f"drain_{run_id}.json", run_id=run_id)
    summary = metrics.snapshot()
    print(json.dumps(summary, indent=2))
    return summary


def run_status(settings: Dict[str, object]) -> None:
    path = _queue_path(settings)
    jobs = read_jobs(path)
    print(json.dumps({
        "path": str(path),
        "pending": len(jobs),
        "retrying": sum(1 for job in jobs if job.attempts > 0),
    }, indent=2))


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(DEFAULT_SETTINGS)
    configure_logging(DEFAULT_LOGGING)

    if uvloop is not None:
        uvloop.install()

    if args.command == "lookup":
        asyncio.run(run_lookup(args, settings))
        return

    if args.command == "enqueue":
        run_enqueue(args, settings)
        return

    if args.command == "drain":
        asyncio.run(run_drain(args, settings))
        return

    if args.command == "status":
        run_status(settings)
        return


if __name__ == "__main__":
    main()
