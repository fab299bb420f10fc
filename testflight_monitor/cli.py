from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from typing import Any, Sequence

import httpx
import structlog

from .db import SqliteBuildRepository
from .errors import DuplicateBuildError, RepositoryError
from .logging_setup import configure_logging
from .models import status_label
from .scheduler import SweepSelection, SweepSummary, build_scheduler
from .schema import validate_testflight_url
from .settings import MonitorSettings, load_settings


logger = structlog.get_logger(__name__)


def _fmt_ts(ts: float | None) -> str:
    if ts is None:
        return "never"
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def _run_sweep(settings: MonitorSettings, *, stale: bool) -> SweepSummary:
    repo = SqliteBuildRepository(settings.db_path)
    repo.ensure_schema()
    async with httpx.AsyncClient() as client:
        scheduler = build_scheduler(settings, client, repo)
        return await scheduler.run_sweep(SweepSelection.STALE if stale else SweepSelection.DUE)


def _cmd_serve(settings: MonitorSettings, args: argparse.Namespace) -> int:
    from .server import serve

    serve(settings, host=args.host, port=args.port)
    return 0


def _cmd_sweep(settings: MonitorSettings, args: argparse.Namespace) -> int:
    summary = asyncio.run(_run_sweep(settings, stale=bool(args.stale)))
    _print_json(summary.to_dict())
    return 1 if summary.aborted else 0


def _cmd_add(settings: MonitorSettings, args: argparse.Namespace) -> int:
    try:
        url = validate_testflight_url(args.url)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    for label, value, limit in (("name", args.name, 100), ("version", args.version, 20), ("build", args.build, 20)):
        if not value.strip() or len(value.strip()) > limit:
            print(f"error: {label} must be 1-{limit} characters", file=sys.stderr)
            return 2
    if args.notes is not None and len(args.notes) > 500:
        print("error: notes must be at most 500 characters", file=sys.stderr)
        return 2

    repo = SqliteBuildRepository(settings.db_path)
    try:
        build = repo.create_build(
            name=args.name.strip(),
            version=args.version.strip(),
            build_number=args.build.strip(),
            url=url,
            notes=args.notes,
            is_public=not args.private,
        )
    except DuplicateBuildError:
        print("error: a build with this URL or version/build number already exists", file=sys.stderr)
        return 1
    _print_json(build.to_dict())
    return 0


def _cmd_list(settings: MonitorSettings, args: argparse.Namespace) -> int:
    builds = SqliteBuildRepository(settings.db_path).list_builds(limit=args.limit)
    if not builds:
        print("No builds are being monitored.")
        return 0
    for b in builds:
        print(
            f"{b.id}  {status_label(b.status)}  {b.name} v{b.version} ({b.build_number})  "
            f"checked {_fmt_ts(b.last_checked_at_ts)}  {b.url}"
        )
    return 0


def _cmd_remove(settings: MonitorSettings, args: argparse.Namespace) -> int:
    if not SqliteBuildRepository(settings.db_path).delete_build(args.build_id):
        print(f"error: build not found: {args.build_id}", file=sys.stderr)
        return 1
    print(f"Removed {args.build_id}")
    return 0


def _cmd_status(settings: MonitorSettings, args: argparse.Namespace) -> int:
    repo = SqliteBuildRepository(settings.db_path)
    build = repo.get_build(args.build_id)
    if build is None:
        print(f"error: build not found: {args.build_id}", file=sys.stderr)
        return 1
    print(f"{build.name} v{build.version} ({build.build_number})")
    print(f"Status: {status_label(build.status)}")
    print(f"URL: {build.url}")
    print(f"Last checked: {_fmt_ts(build.last_checked_at_ts)}")
    if build.notes:
        print(f"Notes: {build.notes}")
    logs = repo.list_logs(build.id, limit=args.logs)
    if logs:
        print("Recent checks:")
        for entry in logs:
            print(f"  {_fmt_ts(entry.checked_at_ts)}  {status_label(entry.status)}  {entry.message}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="testflight-monitor", description="TestFlight build status monitor")
    parser.add_argument("--config", default=os.getenv("TESTFLIGHT_MONITOR_CONFIG"), help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the HTTP API and the sweep scheduler")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.set_defaults(func=_cmd_serve)

    p = sub.add_parser("sweep", help="Run one sweep now and print its summary")
    p.add_argument("--stale", action="store_true", help="Check every build not checked recently, whatever its status")
    p.set_defaults(func=_cmd_sweep)

    p = sub.add_parser("add", help="Start monitoring a TestFlight invite link")
    p.add_argument("--url", required=True)
    p.add_argument("--name", required=True)
    p.add_argument("--version", required=True)
    p.add_argument("--build", required=True)
    p.add_argument("--notes", default=None)
    p.add_argument("--private", action="store_true", help="Hide from the public status listing")
    p.set_defaults(func=_cmd_add)

    p = sub.add_parser("list", help="List monitored builds")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(func=_cmd_list)

    p = sub.add_parser("remove", help="Stop monitoring a build and delete its history")
    p.add_argument("build_id")
    p.set_defaults(func=_cmd_remove)

    p = sub.add_parser("status", help="Show a build and its recent checks")
    p.add_argument("build_id")
    p.add_argument("--logs", type=int, default=5)
    p.set_defaults(func=_cmd_status)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    configure_logging(args.log_level or settings.log_level)

    try:
        return int(args.func(settings, args))
    except RepositoryError as e:
        logger.error("Storage error", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
