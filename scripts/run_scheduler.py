from __future__ import annotations

import argparse
import asyncio
import logging

from buildingsync.entrypoints.cli import _quiet_logging
from buildingsync.jobs.scheduler import build_scheduler, run_nightly_job

log = logging.getLogger("run_scheduler")


async def main(run_now: bool = False) -> None:
    _quiet_logging()

    scheduler = build_scheduler()
    scheduler.start()
    job = scheduler.get_job("nightly_sync")
    log.info("Scheduler started; next nightly sync at %s", job.next_run_time if job else None)

    if run_now:
        await run_nightly_job()

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        scheduler.shutdown(wait=False)
        log.info("Scheduler stopped")


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="Run the nightly sync on a daily cron schedule")
    p.add_argument("--run-now", action="store_true", help="Also run one nightly sync immediately")
    args = p.parse_args()
    try:
        asyncio.run(main(run_now=args.run_now))
    except KeyboardInterrupt:
        pass
