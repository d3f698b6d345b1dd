# buildingsync/jobs/scheduler.py
from __future__ import annotations

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from ..config import FeedConfigError, settings
from ..db import AsyncSessionLocal
from ..service_layer.orchestrator import NightlyOptions, PreflightError, run_nightly

log = logging.getLogger(__name__)


async def run_nightly_job() -> None:
    try:
        report = await run_nightly(AsyncSessionLocal, options=NightlyOptions(triggered_by="scheduler"))
    except (FeedConfigError, PreflightError) as e:
        log.error("nightly sync skipped: %s", e)
        return
    log.info("nightly sync %s: %s", report.run_id, report.status.value)


def build_scheduler() -> AsyncIOScheduler:
    sched = AsyncIOScheduler()

    sched.add_job(
        lambda: asyncio.create_task(run_nightly_job()),
        "cron",
        hour=settings.SCHED_NIGHTLY_HOUR,
        minute=settings.SCHED_NIGHTLY_MINUTE,
        id="nightly_sync",
    )

    return sched
