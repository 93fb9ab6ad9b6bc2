"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from pagecache.admin.status import job_snapshot, summarise_collections
from pagecache.config import DEFAULT_LOGGING_PATH, DEFAULT_SETTINGS_PATH, Services, build_services, load_settings
from pagecache.observability.log import configure_logging
from pagecache.observability.metrics import load_job_metrics


def cmd_list(services: Services, args: argparse.Namespace) -> None:
    rows = summarise_collections(services.registry.names(), services.cache.collections())
    print(json.dumps(rows, indent=2))


def cmd_count(services: Services, args: argparse.Namespace) -> None:
    print(json.dumps({"collection": args.collection, "cached_records": services.cache.count(args.collection)}))


def cmd_purge(services: Services, args: argparse.Namespace) -> None:
    if not args.yes:
        raise SystemExit(f"refusing to purge {args.collection} without --yes")
    deleted = services.cache.purge(args.collection)
    print(json.dumps({"collection": args.collection, "deleted": deleted}))


def cmd_recover(services: Services, args: argparse.Namespace) -> None:
    recovered = services.coordinator.recover_orphans(args.collection)
    print(json.dumps([job_snapshot(job) for job in recovered], indent=2))


def cmd_metrics(services: Services, args: argparse.Namespace) -> None:
    document = load_job_metrics(services.layout.metrics, args.job_id)
    if document is None:
        raise SystemExit(f"no metrics exported for {args.job_id}")
    print(json.dumps(document, indent=2))


def cmd_validate(services: Services, args: argparse.Namespace) -> None:
    results = services.registry.validate_all()
    report = [{"collection": name, "status": "OK" if detail == "ok" else "FAIL", "detail": detail}
              for name, detail in results.items()]
    print(json.dumps(report, indent=2))
    if any(item["status"] == "FAIL" for item in report):
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagecache.admin.cli", description="Administration commands")
    parser.add_argument("--config", type=Path, default=DEFAULT_SETTINGS_PATH)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Show configured collections and cached record counts")

    count = sub.add_parser("count", help="Count cached records of a collection")
    count.add_argument("collection")

    purge = sub.add_parser("purge", help="Delete every cached record of a collection")
    purge.add_argument("collection")
    purge.add_argument("--yes", action="store_true", help="Confirm the destructive purge")

    recover = sub.add_parser("recover", help="Mark orphaned pending/running jobs as failed")
    recover.add_argument("--collection")

    metrics = sub.add_parser("metrics", help="Show the exported counters of a job")
    metrics.add_argument("job_id")

    sub.add_parser("validate", help="Check every collection's credentials are configured")

    return parser


COMMANDS = {
    "list": cmd_list,
    "count": cmd_count,
    "purge": cmd_purge,
    "recover": cmd_recover,
    "metrics": cmd_metrics,
    "validate": cmd_validate,
}


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    configure_logging(DEFAULT_LOGGING_PATH)
    parser = build_parser()
    args = parser.parse_args(argv)
    services = build_services(load_settings(args.config))
    COMMANDS[args.command](services, args)


if __name__ == "__main__":
    main()
