# buildingsync/entrypoints/cli.py
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.clients.http_resilience import FeedAuthError
from ..adapters.clients.reso_web_api import ResoWebApiClient
from ..config import FeedConfigError, validate_feed_config
from ..db import AsyncSessionLocal, engine
from ..models import Base
from ..schemas import ProgressEvent
from ..service_layer.assignment import run_assignment
from ..service_layer.discovery import discover_municipality
from ..service_layer.jobruns import fail_run, finish_run, start_run
from ..service_layer.orchestrator import NightlyOptions, PreflightError, run_nightly
from ..service_layer.progress import Event

log = logging.getLogger(__name__)


def _quiet_logging() -> None:
    # Root defaults
    logging.basicConfig(
        level=logging.INFO,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    # Quiet the usual offenders
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _log_event(event: Event) -> None:
    if isinstance(event, ProgressEvent) and event.status != "syncing":
        p = event.progress
        log.info("[%s/%s] %s %s -> %s", p.current, p.total, event.candidate_id, event.name or "(unnamed)", event.status)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def cmd_discover(
    session_maker: async_sessionmaker[AsyncSession],
    args: argparse.Namespace,
    feed: ResoWebApiClient | None = None,
) -> int:
    if feed is None:
        validate_feed_config()
        feed = ResoWebApiClient()

    async with session_maker() as session:
        run = await start_run(session, "discovery", triggered_by="cli", municipality_id=args.municipality)
        await session.commit()
        try:
            res = await discover_municipality(
                session,
                municipality_id=args.municipality,
                community_id=args.community,
                feed=feed,
                allow_count_decrease=args.allow_count_decrease,
            )
            await finish_run(session, run, res.summary())
            await session.commit()
        except (ValueError, FeedAuthError) as e:
            await session.rollback()
            await fail_run(session, run, e)
            await session.commit()
            log.error("discovery failed: %s", e)
            return 1

    _print(res.summary())
    return 0


async def cmd_assign(session_maker: async_sessionmaker[AsyncSession], args: argparse.Namespace) -> int:
    summary = await run_assignment(session_maker, args.ids, batch_size=args.batch_size, on_event=_log_event)
    _print(summary)
    # partial success still exits 0
    return 0 if summary["completed"] else 1


async def cmd_nightly(
    session_maker: async_sessionmaker[AsyncSession],
    args: argparse.Namespace,
    feed: ResoWebApiClient | None = None,
) -> int:
    opts = NightlyOptions(
        skip_discovery=args.skip_discovery,
        skip_assignment=args.skip_assignment,
        area=args.area,
        force=args.force,
        retry_failed=args.retry_failed,
        triggered_by="cli",
        concurrency=args.concurrency,
    )
    try:
        report = await run_nightly(session_maker, feed=feed, options=opts, on_event=_log_event)
    except PreflightError as e:
        log.error("preflight failed: %s", e)
        return 1

    _print(report.summary())
    return report.exit_code


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="buildingsync", description="Building discovery and sync pipeline")
    sub = p.add_subparsers(dest="command", required=True)

    d = sub.add_parser("discover", help="Discover condo buildings for one municipality")
    d.add_argument("--municipality", type=int, required=True, help="Municipality id")
    d.add_argument("--community", type=int, default=None, help="Community id (optional)")
    d.add_argument(
        "--allow-count-decrease",
        action="store_true",
        help="Accept an empty feed result / lower hierarchy counts",
    )

    a = sub.add_parser("assign", help="Link staged candidates into the building catalog")
    a.add_argument("ids", nargs="+", type=int, help="Candidate ids")
    a.add_argument("--batch-size", type=int, default=None)

    n = sub.add_parser("nightly", help="Full discovery + assignment run")
    n.add_argument("--skip-discovery", action="store_true")
    n.add_argument("--skip-assignment", action="store_true")
    n.add_argument("--area", type=str, default=None, help="Area name filter (substring, 'all' for every area)")
    n.add_argument("--force", action="store_true", help="Re-discover municipalities that already have buildings")
    n.add_argument("--retry-failed", action="store_true", help="Also assign candidates that previously failed")
    n.add_argument("--concurrency", type=int, default=None, help="Municipalities discovered at once")

    sub.add_parser("init-db", help="Create all tables (idempotent)")
    return p


async def _dispatch(args: argparse.Namespace, session_maker: async_sessionmaker[AsyncSession]) -> int:
    if args.command == "init-db":
        await init_db()
        print("OK: created all tables (idempotent).")
        return 0
    if args.command == "discover":
        return await cmd_discover(session_maker, args)
    if args.command == "assign":
        return await cmd_assign(session_maker, args)
    if args.command == "nightly":
        return await cmd_nightly(session_maker, args)
    raise ValueError(f"unknown command {args.command}")


def main(argv: list[str] | None = None, session_maker: async_sessionmaker[AsyncSession] | None = None) -> int:
    _quiet_logging()
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_dispatch(args, session_maker or AsyncSessionLocal))
    except FeedConfigError as e:
        log.error("configuration error: %s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
