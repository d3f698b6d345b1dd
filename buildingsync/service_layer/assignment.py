# buildingsync/service_layer/assignment.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..adapters.repos.buildings import BuildingRepository
from ..adapters.repos.candidates import CandidateRepository
from ..adapters.repos.hierarchy import HierarchyRepository
from ..adapters.repos.listings import ListingRepository
from ..config import settings
from ..domain.address import building_slug, canonical_address, full_street_name, leading_word
from ..domain.media import pick_thumbnails
from ..domain.policies import LINKED_STATUSES
from ..models import Building, CandidateStatus, DiscoveredBuilding
from ..schemas import CompleteEvent, ErrorEvent, ProgressCounts, ProgressEvent
from .hierarchy import recount_hierarchy
from .progress import Event

log = logging.getLogger(__name__)


@dataclass
class StepResult:
    ok: bool = True
    skipped: bool = False
    count: int = 0
    error: str | None = None


@dataclass
class AssignmentOutcome:
    """
    Per-candidate result. link / geo / thumbnails are reported separately so a
    caller can see "linked but not thumbnailed" instead of inferring it.
    """

    candidate_id: int
    name: str | None = None
    status: CandidateStatus = CandidateStatus.failed
    building_id: int | None = None
    created: bool = False
    error: str | None = None
    municipality_id: int | None = None
    area_id: int | None = None
    link: StepResult = field(default_factory=lambda: StepResult(skipped=True))
    geo: StepResult = field(default_factory=lambda: StepResult(skipped=True))
    thumbnails: StepResult = field(default_factory=lambda: StepResult(skipped=True))

    @property
    def linked_listings(self) -> int:
        return self.link.count if self.link.ok else 0


@dataclass(frozen=True)
class _BuildingRef:
    # plain values so later steps survive a rollback that expires ORM state
    id: int
    street_number: str
    street_name: str
    city: str | None
    community_id: int | None


def _ref(b: Building) -> _BuildingRef:
    return _BuildingRef(b.id, b.street_number, b.street_name, b.city_district, b.community_id)


async def _find_or_create_building(
    session: AsyncSession,
    cand: DiscoveredBuilding,
    *,
    now: datetime,
) -> tuple[Building, bool]:
    repo = BuildingRepository(session)

    # a candidate that already points at a building keeps that reference
    if cand.building_id is not None:
        existing = await repo.get(cand.building_id)
        if existing is not None:
            return existing, False

    full = full_street_name(cand.street_name, cand.street_suffix, cand.street_dir_suffix)
    slug = building_slug(cand.building_name, cand.street_number, full, cand.city)
    if not slug:
        raise ValueError("could not derive a slug")

    existing = await repo.get_by_slug(slug)
    if existing is not None:
        return existing, False

    address = canonical_address(cand.street_number, full, cand.city)
    b = Building(
        slug=slug,
        building_name=cand.building_name or address,
        canonical_address=address,
        street_number=cand.street_number,
        street_name=full,
        city_district=cand.city,
        community_id=cand.community_id,
        municipality_id=cand.municipality_id,
        area_id=cand.area_id,
        sync_status="completed",
        last_synced_at=now,
        created_at=now,
    )
    session.add(b)
    try:
        await session.flush()
    except IntegrityError:
        # lost a race on the slug; the row that won is authoritative
        await session.rollback()
        existing = await repo.get_by_slug(slug)
        if existing is None:
            raise
        log.info("slug %s created concurrently; reusing building %s", slug, existing.id)
        return existing, False
    return b, True


async def _link_listings(session: AsyncSession, b: _BuildingRef) -> StepResult:
    street_word = leading_word(b.street_name)
    city_word = leading_word(b.city)
    if not street_word or not city_word:
        return StepResult(skipped=True)
    n = await ListingRepository(session).link_by_address(
        building_id=b.id,
        street_number=b.street_number,
        street_word=street_word,
        city_word=city_word,
    )
    return StepResult(count=n)


async def _backfill_geo(session: AsyncSession, b: _BuildingRef) -> StepResult:
    if b.community_id is None:
        return StepResult(skipped=True)
    hier = HierarchyRepository(session)
    comm = await hier.community(b.community_id)
    if comm is None:
        return StepResult(skipped=True)
    muni = await hier.municipality(comm.municipality_id)
    if muni is None or muni.area_id is None:
        return StepResult(skipped=True)

    n = await ListingRepository(session).backfill_geo(
        building_id=b.id,
        area_id=muni.area_id,
        municipality_id=muni.id,
        community_id=comm.id,
    )
    return StepResult(count=n)


async def _assign_thumbnails(session: AsyncSession, b: _BuildingRef) -> StepResult:
    listings = ListingRepository(session)
    ids = await listings.listing_ids_for_building(b.id)
    if not ids:
        return StepResult(skipped=True)

    rows = await listings.primary_thumbnails(ids)
    if not rows:
        rows = await listings.earliest_thumbnails(ids)
    photos = pick_thumbnails(rows)
    if not photos:
        return StepResult(skipped=True)

    await BuildingRepository(session).set_photos(b.id, photos)
    return StepResult(count=len(photos))


async def _run_step(
    session: AsyncSession,
    step: str,
    candidate_id: int,
    fn: Callable[[], Awaitable[StepResult]],
) -> StepResult:
    try:
        res = await fn()
        await session.commit()
        return res
    except Exception as e:
        await session.rollback()
        log.warning("candidate %s: %s failed (non-fatal): %s", candidate_id, step, e)
        return StepResult(ok=False, error=str(e))


async def _mark_failed(session: AsyncSession, candidate_id: int, err: Exception, *, now: datetime) -> None:
    await session.rollback()
    cand = await session.get(DiscoveredBuilding, candidate_id, populate_existing=True)
    if cand is None:
        return
    # synced and db_linked candidates keep their status; the reason is still recorded
    if cand.status not in LINKED_STATUSES:
        cand.status = CandidateStatus.failed
    cand.failed_reason = f"DB Assign: {err}"
    cand.retry_count = int(cand.retry_count or 0) + 1
    cand.updated_at = now
    await session.commit()


async def assign_one(
    session_maker: async_sessionmaker[AsyncSession],
    candidate_id: int,
    *,
    now: datetime | None = None,
) -> AssignmentOutcome:
    """
    Link one staged candidate into the canonical catalog.

    Steps 1-2 (slug, find-or-create building) are fatal: the candidate ends
    `failed` with a "DB Assign:" reason. A synced or db_linked candidate keeps
    its status and only gets the reason and a retry count bump. Steps 3-5
    (listing link, geography backfill, thumbnails) are reported on the outcome
    and never fail the candidate.
    """
    now = now or datetime.utcnow()
    out = AssignmentOutcome(candidate_id=candidate_id)

    async with session_maker() as session:
        cand = await CandidateRepository(session).get(candidate_id)
        if cand is None:
            out.error = "not found"
            return out

        out.name = cand.building_name
        out.municipality_id = cand.municipality_id
        out.area_id = cand.area_id
        prior_status = cand.status

        if prior_status not in LINKED_STATUSES:
            cand.status = CandidateStatus.syncing
            cand.updated_at = now
            await session.commit()

        try:
            building, out.created = await _find_or_create_building(session, cand, now=now)
            ref = _ref(building)
            await session.commit()
        except Exception as e:
            log.error("candidate %s: assign failed: %s", candidate_id, e)
            await _mark_failed(session, candidate_id, e, now=now)
            out.status = prior_status if prior_status in LINKED_STATUSES else CandidateStatus.failed
            out.error = str(e)
            return out

        out.building_id = ref.id
        out.link = await _run_step(session, "link listings", candidate_id, lambda: _link_listings(session, ref))
        out.geo = await _run_step(session, "geo backfill", candidate_id, lambda: _backfill_geo(session, ref))
        out.thumbnails = await _run_step(session, "thumbnails", candidate_id, lambda: _assign_thumbnails(session, ref))

        try:
            cand = await session.get(DiscoveredBuilding, candidate_id, populate_existing=True)
            cand.status = CandidateStatus.db_linked
            cand.building_id = ref.id
            cand.synced_at = now
            cand.updated_at = now
            cand.failed_reason = None
            await session.commit()
        except Exception as e:
            log.error("candidate %s: finalize failed: %s", candidate_id, e)
            await _mark_failed(session, candidate_id, e, now=now)
            out.status = prior_status if prior_status in LINKED_STATUSES else CandidateStatus.failed
            out.error = str(e)
            return out

    out.status = CandidateStatus.db_linked
    log.info(
        "candidate %s -> building %s (%s listings linked%s)",
        candidate_id, ref.id, out.linked_listings, ", created" if out.created else "",
    )
    return out


async def _assign_isolated(
    session_maker: async_sessionmaker[AsyncSession],
    candidate_id: int,
    now: datetime | None,
) -> AssignmentOutcome:
    try:
        return await assign_one(session_maker, candidate_id, now=now)
    except Exception as e:
        log.exception("candidate %s: unexpected assignment error", candidate_id)
        return AssignmentOutcome(candidate_id=candidate_id, status=CandidateStatus.failed, error=str(e))


async def _recount_scopes(
    session_maker: async_sessionmaker[AsyncSession],
    scopes: Iterable[tuple[int, int | None]],
) -> None:
    async with session_maker() as session:
        for municipality_id, area_id in sorted(set(scopes), key=lambda s: s[0]):
            # assignment never removes candidates, so a lower count here is real
            await recount_hierarchy(session, municipality_id=municipality_id, area_id=area_id, allow_decrease=True)
        await session.commit()


async def assign_candidates(
    session_maker: async_sessionmaker[AsyncSession],
    candidate_ids: Iterable[int],
    *,
    batch_size: int | None = None,
    now: datetime | None = None,
) -> AsyncIterator[Event]:
    """
    Assign candidates in sequential batches; candidates inside a batch run
    concurrently. Yields a progress event as each candidate settles,
    recounts the touched hierarchy scopes after every batch, then yields
    a single complete event.
    """
    ids = list(dict.fromkeys(int(i) for i in candidate_ids))

    async with session_maker() as session:
        found = await CandidateRepository(session).get_many(ids)
        names = {c.id: c.building_name for c in found}
        scopes = {c.id: (c.municipality_id, c.area_id) for c in found}

    if not found:
        yield ErrorEvent(message="No buildings found for the given ids")
        return

    missing = [i for i in ids if i not in names]
    if missing:
        log.warning("assignment: %s ids not found: %s", len(missing), missing[:20])

    todo = [i for i in ids if i in names]
    counts = ProgressCounts(total=len(todo))
    size = max(1, int(batch_size or settings.ASSIGN_BATCH_SIZE))

    for i in range(0, len(todo), size):
        batch = todo[i : i + size]
        for cid in batch:
            yield ProgressEvent(
                candidate_id=cid, name=names[cid], status=CandidateStatus.syncing.value, progress=counts.model_copy()
            )

        tasks = [asyncio.create_task(_assign_isolated(session_maker, cid, now)) for cid in batch]
        for fut in asyncio.as_completed(tasks):
            outcome = await fut
            counts.current += 1
            if outcome.error is None and outcome.status == CandidateStatus.db_linked:
                counts.completed += 1
            else:
                counts.failed += 1
            yield ProgressEvent(
                candidate_id=outcome.candidate_id,
                name=outcome.name,
                status=outcome.status.value,
                building_id=outcome.building_id,
                linked_listings=outcome.linked_listings if outcome.building_id else None,
                error=outcome.error,
                progress=counts.model_copy(),
            )

        try:
            await _recount_scopes(session_maker, (scopes[cid] for cid in batch))
        except Exception:
            log.exception("assignment: hierarchy recount failed after batch %s", i // size + 1)

    yield CompleteEvent(progress=counts)


async def run_assignment(
    session_maker: async_sessionmaker[AsyncSession],
    candidate_ids: Iterable[int],
    *,
    batch_size: int | None = None,
    on_event: Callable[[Event], Any] | None = None,
) -> dict[str, Any]:
    """Drain assign_candidates() into a summary dict."""
    summary: dict[str, Any] = {"total": 0, "completed": 0, "failed": 0, "linked_listings": 0, "errors": []}

    async for event in assign_candidates(session_maker, candidate_ids, batch_size=batch_size):
        if on_event is not None:
            on_event(event)
        if isinstance(event, ProgressEvent) and event.status != CandidateStatus.syncing.value:
            summary["linked_listings"] += int(event.linked_listings or 0)
            if event.error:
                summary["errors"].append({"id": event.candidate_id, "error": event.error})
        elif isinstance(event, CompleteEvent):
            summary["total"] = event.progress.total
            summary["completed"] = event.progress.completed
            summary["failed"] = event.progress.failed
        elif isinstance(event, ErrorEvent):
            summary["errors"].append({"error": event.message})

    return summary
