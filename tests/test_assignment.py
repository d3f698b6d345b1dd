from sqlalchemy import select

from buildingsync.adapters.repos.listings import ListingRepository
from buildingsync.models import (
    Building,
    CandidateStatus,
    DiscoveredBuilding,
    Media,
    MlsListing,
    Municipality,
)
from buildingsync.schemas import CompleteEvent, ErrorEvent, ProgressEvent
from buildingsync.service_layer import assignment as assignment_mod
from buildingsync.service_layer.assignment import assign_candidates, assign_one, run_assignment

from conftest import seed_hierarchy


async def _stage(async_session_maker, hierarchy, **overrides) -> int:
    values = dict(
        area_id=hierarchy["area"],
        municipality_id=hierarchy["municipality"],
        community_id=hierarchy["waterfront"],
        street_number="100",
        street_key="king",
        street_name="King",
        street_suffix="St",
        street_dir_suffix="W",
        city="Toronto C01",
        building_name="X2 Condos",
        status=CandidateStatus.pending,
    )
    values.update(overrides)
    async with async_session_maker() as s:
        row = DiscoveredBuilding(**values)
        s.add(row)
        await s.commit()
        return row.id


async def _seed_listings(async_session_maker) -> None:
    async with async_session_maker() as s:
        other = Building(
            slug="elsewhere",
            building_name="Elsewhere",
            canonical_address="100 King St W, Toronto C01",
            street_number="100",
            street_name="King St W",
        )
        s.add(other)
        await s.flush()

        rows = {
            "a": MlsListing(listing_key="A", street_number="100", street_name="King St W", city="Toronto C01"),
            "b": MlsListing(listing_key="B", street_number="100", street_name="KING STREET WEST", city="Toronto C01"),
            "taken": MlsListing(
                listing_key="T", street_number="100", street_name="King St W", city="Toronto C01", building_id=other.id
            ),
            "wrong_number": MlsListing(listing_key="W", street_number="101", street_name="King St W", city="Toronto C01"),
        }
        s.add_all(rows.values())
        await s.flush()

        s.add_all(
            [
                Media(listing_id=rows["a"].id, media_url="a-thumb-1.jpg", variant_type="thumbnail", order_number=1),
                Media(listing_id=rows["a"].id, media_url="a-large-1.jpg", variant_type="large", order_number=1),
                Media(listing_id=rows["b"].id, media_url="b-thumb-1.jpg", variant_type="thumbnail", order_number=1),
            ]
        )
        await s.commit()


async def test_assign_links_listings_and_finalizes(async_session_maker, hierarchy):
    await _seed_listings(async_session_maker)
    cid = await _stage(async_session_maker, hierarchy)

    out = await assign_one(async_session_maker, cid)

    assert out.status == CandidateStatus.db_linked
    assert out.created is True
    assert out.link.ok and out.link.count == 2
    assert out.geo.ok and out.geo.count == 2
    assert out.thumbnails.ok and out.thumbnails.count == 2

    async with async_session_maker() as s:
        cand = await s.get(DiscoveredBuilding, cid)
        building = await s.get(Building, out.building_id)
        listings = {r.listing_key: r for r in (await s.execute(select(MlsListing))).scalars().all()}

    assert cand.status == CandidateStatus.db_linked
    assert cand.building_id == building.id
    assert cand.failed_reason is None
    assert cand.synced_at is not None

    assert building.slug == "x2-condos-100-king-st-w-toronto-c01"
    assert building.canonical_address == "100 King St W, Toronto C01"
    assert building.cover_photo_url == "a-thumb-1.jpg"
    assert building.gallery_photos == ["a-thumb-1.jpg", "b-thumb-1.jpg"]

    assert listings["A"].building_id == building.id
    assert listings["A"].area_id == hierarchy["area"]
    assert listings["A"].community_id == hierarchy["waterfront"]
    assert listings["B"].building_id == building.id
    # already linked elsewhere, or a different street number
    assert listings["T"].building_id != building.id
    assert listings["W"].building_id is None


async def test_thumbnails_fall_back_to_earliest_photo(async_session_maker, hierarchy):
    async with async_session_maker() as s:
        lst = MlsListing(listing_key="A", street_number="100", street_name="King St W", city="Toronto C01")
        s.add(lst)
        await s.flush()
        s.add_all(
            [
                Media(listing_id=lst.id, media_url="late.jpg", variant_type="thumbnail", order_number=7),
                Media(listing_id=lst.id, media_url="early.jpg", variant_type="thumbnail", order_number=3),
            ]
        )
        await s.commit()
    cid = await _stage(async_session_maker, hierarchy)

    out = await assign_one(async_session_maker, cid)

    async with async_session_maker() as s:
        building = await s.get(Building, out.building_id)
    assert building.cover_photo_url == "early.jpg"


async def test_same_slug_reuses_one_building(async_session_maker, hierarchy):
    async with async_session_maker() as s:
        other = Municipality(name="Toronto C01 East", area_id=hierarchy["area"])
        s.add(other)
        await s.commit()
        other_id = other.id

    first = await _stage(async_session_maker, hierarchy)
    second = await _stage(async_session_maker, hierarchy, municipality_id=other_id, community_id=None)

    a = await assign_one(async_session_maker, first)
    b = await assign_one(async_session_maker, second)

    assert a.created is True
    assert b.created is False
    assert a.building_id == b.building_id
    async with async_session_maker() as s:
        slugs = (await s.execute(select(Building.slug))).scalars().all()
    assert len(slugs) == len(set(slugs)) == 1


async def test_link_failure_still_reaches_db_linked(async_session_maker, hierarchy, monkeypatch):
    await _seed_listings(async_session_maker)
    cid = await _stage(async_session_maker, hierarchy)

    async def boom(self, **kwargs):
        raise RuntimeError("link routine unavailable")

    monkeypatch.setattr(ListingRepository, "link_by_address", boom)

    out = await assign_one(async_session_maker, cid)

    assert out.status == CandidateStatus.db_linked
    assert out.link.ok is False
    assert out.link.error == "link routine unavailable"
    assert out.linked_listings == 0
    # nothing linked, so nothing to backfill or photograph
    assert out.geo.count == 0
    assert out.thumbnails.skipped is True

    async with async_session_maker() as s:
        cand = await s.get(DiscoveredBuilding, cid)
    assert cand.status == CandidateStatus.db_linked
    assert cand.building_id == out.building_id


async def test_building_failure_marks_candidate_failed(async_session_maker, hierarchy, monkeypatch):
    cid = await _stage(async_session_maker, hierarchy)
    monkeypatch.setattr(assignment_mod, "building_slug", lambda *a, **k: "")

    out = await assign_one(async_session_maker, cid)
    assert out.status == CandidateStatus.failed

    out = await assign_one(async_session_maker, cid)

    async with async_session_maker() as s:
        cand = await s.get(DiscoveredBuilding, cid)
        buildings = (await s.execute(select(Building))).scalars().all()

    assert cand.status == CandidateStatus.failed
    assert cand.failed_reason == "DB Assign: could not derive a slug"
    assert cand.retry_count == 2
    assert buildings == []


async def test_building_failure_never_moves_synced_candidate_backwards(async_session_maker, hierarchy, monkeypatch):
    cid = await _stage(async_session_maker, hierarchy, status=CandidateStatus.synced)
    monkeypatch.setattr(assignment_mod, "building_slug", lambda *a, **k: "")

    out = await assign_one(async_session_maker, cid)
    assert out.status == CandidateStatus.synced
    assert out.error == "could not derive a slug"

    summary = await run_assignment(async_session_maker, [cid])
    assert (summary["completed"], summary["failed"]) == (0, 1)

    async with async_session_maker() as s:
        cand = await s.get(DiscoveredBuilding, cid)

    assert cand.status == CandidateStatus.synced
    assert cand.failed_reason == "DB Assign: could not derive a slug"
    assert cand.retry_count == 2


async def test_existing_building_reference_is_kept(async_session_maker, hierarchy):
    async with async_session_maker() as s:
        b = Building(
            slug="legacy-slug",
            building_name="Legacy",
            canonical_address="100 King St W, Toronto C01",
            street_number="100",
            street_name="King St W",
        )
        s.add(b)
        await s.commit()
        bid = b.id

    cid = await _stage(async_session_maker, hierarchy, building_id=bid, status=CandidateStatus.db_linked)
    out = await assign_one(async_session_maker, cid)

    assert out.building_id == bid
    assert out.created is False
    assert out.status == CandidateStatus.db_linked


async def test_assign_stream_reports_progress_and_recounts(async_session_maker, hierarchy):
    ok = await _stage(async_session_maker, hierarchy)
    other = await _stage(async_session_maker, hierarchy, street_number="55", street_key="bremner", street_name="Bremner")

    events = [e async for e in assign_candidates(async_session_maker, [ok, other, ok, 424242], batch_size=1)]

    assert [type(e) for e in events] == [ProgressEvent] * 4 + [CompleteEvent]
    assert [e.status for e in events[:4]] == ["syncing", "db_linked", "syncing", "db_linked"]
    done = events[-1].progress
    assert (done.total, done.current, done.completed, done.failed) == (2, 2, 2, 0)

    async with async_session_maker() as s:
        muni = await s.get(Municipality, hierarchy["municipality"])
    assert (muni.buildings_discovered, muni.buildings_synced) == (2, 2)


async def test_assign_unknown_ids_yields_error_event(async_session_maker, hierarchy):
    events = [e async for e in assign_candidates(async_session_maker, [999])]
    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)

    summary = await run_assignment(async_session_maker, [999])
    assert summary["total"] == 0
    assert summary["errors"] == [{"error": "No buildings found for the given ids"}]


async def test_link_treats_like_wildcards_literally(session):
    b = Building(
        slug="odd", building_name="Odd", canonical_address="7 K_ng St, Toronto C01", street_number="7", street_name="K_ng St"
    )
    session.add(b)
    session.add_all(
        [
            MlsListing(listing_key="K1", street_number="7", street_name="King St", city="Toronto C01"),
            MlsListing(listing_key="K2", street_number="7", street_name="K_ng St", city="Toronto C01"),
            MlsListing(listing_key="K3", street_number="7", street_name="Kong St", city="Toronto C01"),
        ]
    )
    await session.commit()

    repo = ListingRepository(session)
    assert await repo.link_by_address(building_id=b.id, street_number="7", street_word="k_ng", city_word="toronto") == 1
    assert await repo.link_by_address(building_id=b.id, street_number="7", street_word="%", city_word="%") == 0
    await session.commit()

    linked = (await session.execute(select(MlsListing.listing_key).where(MlsListing.building_id == b.id))).scalars().all()
    assert linked == ["K2"]


async def test_concurrent_batch_isolates_one_failing_candidate(file_session_maker, monkeypatch):
    hierarchy = await seed_hierarchy(file_session_maker)
    numbers = [str(n) for n in range(1, 11)]
    async with file_session_maker() as s:
        s.add_all(
            MlsListing(listing_key=f"L{n}", street_number=n, street_name="King St W", city="Toronto C01")
            for n in numbers + ["11"]
        )
        await s.commit()

    ids = [await _stage(file_session_maker, hierarchy, street_number=n, building_name=f"Tower {n}") for n in numbers]
    broken = await _stage(file_session_maker, hierarchy, street_number="11", building_name="Broken")

    real_slug = assignment_mod.building_slug

    def slug(name, *args):
        return "" if name == "Broken" else real_slug(name, *args)

    monkeypatch.setattr(assignment_mod, "building_slug", slug)

    events = []
    summary = await run_assignment(file_session_maker, ids + [broken], batch_size=11, on_event=events.append)

    assert (summary["total"], summary["completed"], summary["failed"]) == (11, 10, 1)
    assert summary["linked_listings"] == 10
    assert summary["errors"] == [{"id": broken, "error": "could not derive a slug"}]
    # the whole batch is announced before any candidate finishes
    assert [e.status for e in events[:11]] == ["syncing"] * 11

    async with file_session_maker() as s:
        cands = {c.id: c for c in (await s.execute(select(DiscoveredBuilding))).scalars().all()}
        listings = {r.listing_key: r for r in (await s.execute(select(MlsListing))).scalars().all()}
        muni = await s.get(Municipality, hierarchy["municipality"])

    assert {cands[i].status for i in ids} == {CandidateStatus.db_linked}
    assert cands[broken].status == CandidateStatus.failed
    for n, cid in zip(numbers, ids):
        assert cands[cid].building_id is not None
        assert listings[f"L{n}"].building_id == cands[cid].building_id
    assert listings["L11"].building_id is None
    assert muni.buildings_synced == 10
