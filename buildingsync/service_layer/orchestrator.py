# buildingsync/service_layer/orchestrator.py
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.clients.http_resilience import FeedAuthError
from ..adapters.clients.reso_web_api import ResoWebApiClient
from ..adapters.repos.buildings import BuildingRepository
from ..adapters.repos.candidates import CandidateRepository
from ..adapters.repos.hierarchy import HierarchyRepository
from ..adapters.repos.listings import ListingRepository
from ..config import settings, validate_feed_config
from ..models import SyncHistory, SyncRunStatus
from .assignment import run_assignment
from .discovery import discover_municipality
from .jobruns import fail_run, finish_run, start_run
from .progress import Event

log = logging.getLogger(__name__)


class PreflightError(RuntimeError):
    """Feed or database unreachable before the run started."""


class UnitState(str, enum.Enum):
    idle = "idle"
    running = "running"
    completed = "completed"
    partial = "partial"
    failed = "failed"


@dataclass(frozen=True)
class BaselineCounts:
    total_listings: int
    linked_listings: int
    buildings: int


async def snapshot_counts(session: AsyncSession) -> BaselineCounts:
    total, linked = await ListingRepository(session).counts()
    buildings = await BuildingRepository(session).count()
    return BaselineCounts(total_listings=total, linked_listings=linked, buildings=buildings)


def compare_counts(before: BaselineCounts, after: BaselineCounts) -> list[str]:
    """
    Warnings for any count that went down across a run. The run status is
    not changed by these; they are surfaced in the summary and logged.
    """
    warnings: list[str] = []
    for label, b, a in (
        ("linked listings", before.linked_listings, after.linked_listings),
        ("buildings", before.buildings, after.buildings),
        ("total listings", before.total_listings, after.total_listings),
    ):
        if a < b:
            warnings.append(f"SAFETY: {label} decreased {b} -> {a} (-{b - a})")
    return warnings


@dataclass
class NightlyOptions:
    skip_discovery: bool = False
    skip_assignment: bool = False
    area: str | None = None
    force: bool = False
    retry_failed: bool = False
    triggered_by: str = "cli"
    concurrency: int | None = None
    assign_batch_size: int | None = None


@dataclass
class UnitResult:
    municipality_id: int
    name: str
    discovery: UnitState = UnitState.idle
    assignment: UnitState = UnitState.idle
    discovered: int = 0
    assigned: int = 0
    assign_failed: int = 0
    error: str | None = None


@dataclass
class NightlyReport:
    status: SyncRunStatus = SyncRunStatus.running
    run_id: int | None = None
    baseline: BaselineCounts | None = None
    post_run: BaselineCounts | None = None
    units: list[UnitResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.status == SyncRunStatus.failed else 0

    def summary(self) -> dict[str, Any]:
        discovery = [u for u in self.units if u.discovery != UnitState.idle]
        assignment = [u for u in self.units if u.assignment != UnitState.idle]
        return {
            "status": self.status.value,
            "discovery": {
                "municipalities": len(discovery),
                "succeeded": sum(1 for u in discovery if u.discovery == UnitState.completed),
                "failed": sum(1 for u in discovery if u.discovery == UnitState.failed),
                "buildings": sum(u.discovered for u in discovery),
            },
            "assignment": {
                "municipalities": len(assignment),
                "assigned": sum(u.assigned for u in assignment),
                "failed": sum(u.assign_failed for u in assignment),
            },
            "baseline": asdict(self.baseline) if self.baseline else None,
            "post_run": asdict(self.post_run) if self.post_run else None,
            "warnings": list(self.warnings),
            "units": [
                {**asdict(u), "discovery": u.discovery.value, "assignment": u.assignment.value} for u in self.units
            ],
            "error": self.error,
        }


def _unit_state(succeeded: int, failed: int) -> UnitState:
    if failed == 0:
        return UnitState.completed
    if succeeded == 0:
        return UnitState.failed
    return UnitState.partial


def _run_status(units: list[UnitResult]) -> SyncRunStatus:
    states = [s for u in units for s in (u.discovery, u.assignment) if s != UnitState.idle]
    if not states:
        return SyncRunStatus.completed
    if all(s == UnitState.completed for s in states):
        return SyncRunStatus.completed
    if all(s == UnitState.failed for s in states):
        return SyncRunStatus.failed
    return SyncRunStatus.partial


async def preflight(session_maker: async_sessionmaker[AsyncSession], feed: ResoWebApiClient) -> None:
    if not await feed.test_connection():
        raise PreflightError("feed connection test failed")
    try:
        async with session_maker() as session:
            await session.execute(select(1))
    except Exception as e:
        raise PreflightError(f"database unreachable: {e}") from e


async def _discover_unit(
    session_maker: async_sessionmaker[AsyncSession],
    feed: ResoWebApiClient,
    unit: UnitResult,
) -> None:
    unit.discovery = UnitState.running
    try:
        async with session_maker() as session:
            res = await discover_municipality(session, municipality_id=unit.municipality_id, feed=feed)
            await session.commit()
        unit.discovered = len(res.buildings)
        unit.discovery = UnitState.completed
    except FeedAuthError:
        unit.discovery = UnitState.failed
        raise
    except Exception as e:
        log.error("discovery failed for %s: %s", unit.name, e)
        unit.discovery = UnitState.failed
        unit.error = str(e)


async def _assign_unit(
    session_maker: async_sessionmaker[AsyncSession],
    unit: UnitResult,
    *,
    retry_failed: bool,
    batch_size: int | None,
    on_event: Callable[[Event], Any] | None,
) -> None:
    try:
        async with session_maker() as session:
            ids = await CandidateRepository(session).assignable_ids(
                unit.municipality_id, include_failed=retry_failed
            )
        if not ids:
            return

        unit.assignment = UnitState.running
        res = await run_assignment(session_maker, ids, batch_size=batch_size, on_event=on_event)
    except Exception as e:
        log.error("assignment failed for %s: %s", unit.name, e)
        unit.assignment = UnitState.failed
        unit.error = str(e)
        return

    unit.assigned = res["completed"]
    unit.assign_failed = res["failed"]
    unit.assignment = _unit_state(res["completed"], res["failed"])


async def run_nightly(
    session_maker: async_sessionmaker[AsyncSession],
    *,
    feed: ResoWebApiClient | None = None,
    options: NightlyOptions | None = None,
    on_event: Callable[[Event], Any] | None = None,
) -> NightlyReport:
    """
    Full sync: preflight, baseline snapshot, discovery then assignment per
    municipality (bounded concurrency, failures isolated per unit), post-run
    snapshot and comparison, and a sync_history ledger row.

    Raises FeedConfigError / PreflightError before anything is written.
    """
    opts = options or NightlyOptions()
    if feed is None:
        validate_feed_config()
        feed = ResoWebApiClient()

    await preflight(session_maker, feed)

    report = NightlyReport()
    async with session_maker() as session:
        report.baseline = await snapshot_counts(session)
        run = await start_run(session, "nightly", triggered_by=opts.triggered_by)
        await session.commit()
        report.run_id = run.id

        hier = HierarchyRepository(session)
        munis = await hier.municipalities(area_name=opts.area)
        report.units = [UnitResult(municipality_id=m.id, name=m.name) for m in munis]
        # without force only never-discovered municipalities are re-fetched
        discover_ids = {m.id for m in await hier.municipalities(area_name=opts.area, undiscovered_only=not opts.force)}

    log.info(
        "nightly run %s: %s municipalities (%s to discover), baseline=%s",
        report.run_id, len(report.units), len(discover_ids), report.baseline,
    )

    concurrency = max(1, int(opts.concurrency or settings.MUNICIPALITY_CONCURRENCY))
    try:
        if not opts.skip_discovery:
            todo = [u for u in report.units if u.municipality_id in discover_ids]
            for i in range(0, len(todo), concurrency):
                batch = todo[i : i + concurrency]
                results = await asyncio.gather(
                    *(_discover_unit(session_maker, feed, u) for u in batch), return_exceptions=True
                )
                for r in results:
                    if isinstance(r, FeedAuthError):
                        raise r

        if not opts.skip_assignment:
            # candidates are independent rows; municipalities run one at a time here
            for unit in report.units:
                await _assign_unit(
                    session_maker,
                    unit,
                    retry_failed=opts.retry_failed,
                    batch_size=opts.assign_batch_size,
                    on_event=on_event,
                )

        report.status = _run_status(report.units)
    except FeedAuthError as e:
        log.error("nightly run aborted: %s", e)
        report.status = SyncRunStatus.failed
        report.error = str(e)

    async with session_maker() as session:
        report.post_run = await snapshot_counts(session)
        report.warnings = compare_counts(report.baseline, report.post_run)
        for w in report.warnings:
            log.error(w)

        run = await session.get(SyncHistory, report.run_id)
        if report.status == SyncRunStatus.failed:
            await fail_run(session, run, RuntimeError(report.error or "all units failed"), report.summary())
        else:
            await finish_run(session, run, report.summary(), status=report.status)
        await session.commit()

    log.info("nightly run %s finished: %s", report.run_id, report.status.value)
    return report
