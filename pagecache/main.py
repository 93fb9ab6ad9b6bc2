"""Command-line entrypoints for the paged record cache."""
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop unavailable on some platforms
    uvloop = None

from pagecache.admin.status import job_snapshot
from pagecache.config import DEFAULT_LOGGING_PATH, DEFAULT_SETTINGS_PATH, Services, build_services, load_settings
from pagecache.errors import PageCacheError
from pagecache.observability.log import configure_logging
from pagecache.orchestrator.jobs import Job


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="pagecache", description="Checkpointed paged ingestion and CSV export")
    parser.add_argument("--config", type=Path, default=DEFAULT_SETTINGS_PATH, help="Path to settings.toml")
    parser.add_argument("--log-level", help="Override the root log level")
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch", help="Start a new ingestion job for a collection")
    fetch.add_argument("collection")
    fetch.add_argument("--csv", action="store_true", help="Materialize the collection after a successful run")

    resume = sub.add_parser("resume", help="Resume a failed job from its last committed page")
    resume.add_argument("target", help="Collection name or job id")
    resume.add_argument("--csv", action="store_true", help="Materialize the collection after a successful run")

    both = sub.add_parser("both", help="Fetch a collection then materialize it")
    both.add_argument("collection")

    csv_cmd = sub.add_parser("csv", help="Materialize cached records to CSV")
    csv_cmd.add_argument("collection")

    status = sub.add_parser("status", help="Show the latest job of a collection")
    status.add_argument("collection")

    history = sub.add_parser("history", help="List recent jobs of a collection")
    history.add_argument("collection")
    history.add_argument("--limit", type=int, default=10)

    return parser


async def run_job(services: Services, args: argparse.Namespace) -> Job:
    """Start or resume a job and wait for its task to finish."""
    coordinator = services.coordinator
    if args.command == "resume":
        handle = await coordinator.resume(args.target, materialize_after=args.csv)
    else:
        materialize_after = args.command == "both" or getattr(args, "csv", False)
        handle = await coordinator.start(args.collection, materialize_after=materialize_after)
    return await handle.wait()


def dispatch(services: Services, args: argparse.Namespace) -> object:
    coordinator = services.coordinator
    if args.command in ("fetch", "resume", "both"):
        runner = uvloop.run if uvloop is not None else asyncio.run
        return job_snapshot(runner(run_job(services, args)))
    if args.command == "csv":
        path = asyncio.run(coordinator.materialize(args.collection))
        return {"collection": args.collection, "path": str(path)}
    if args.command == "status":
        job = coordinator.status(args.collection)
        return job_snapshot(job) if job is not None else None
    if args.command == "history":
        return [job_snapshot(job) for job in coordinator.history(args.collection, limit=args.limit)]
    raise SystemExit(f"unknown command {args.command}")


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(DEFAULT_LOGGING_PATH, level=args.log_level)
    services = build_services(load_settings(args.config))
    try:
        result = dispatch(services, args)
    except PageCacheError as exc:
        raise SystemExit(exc.describe())
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
