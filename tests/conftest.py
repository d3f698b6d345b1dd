# tests/conftest.py
from __future__ import annotations

from typing import Any, Callable

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from buildingsync.adapters.clients.reso_web_api import ResoWebApiClient
from buildingsync.config import settings
from buildingsync.models import Area, Base, Community, Municipality

FEED_URL = "https://feed.test/odata"


@pytest.fixture
async def engine():
    """
    Fresh in-memory DB per test. StaticPool makes all connections share the same
    in-memory database for the lifetime of this engine fixture.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def async_session_maker(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=True)


@pytest.fixture
async def session(async_session_maker):
    async with async_session_maker() as s:
        yield s


@pytest.fixture
async def file_session_maker(tmp_path):
    """
    File-backed DB on the default connection pool, so sessions get their own
    connections and batches really run side by side.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'buildingsync.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield async_sessionmaker(engine, expire_on_commit=False, autoflush=True)
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "HTTP_BACKOFF_BASE_S", 0.0)
    monkeypatch.setattr(settings, "HTTP_RETRY_AFTER_CAP_S", 0.0)
    # one in-memory connection is shared by every session, so keep DB work serial;
    # tests on file_session_maker pass their own batch size and concurrency
    monkeypatch.setattr(settings, "ASSIGN_BATCH_SIZE", 1)
    monkeypatch.setattr(settings, "MUNICIPALITY_CONCURRENCY", 1)


async def seed_hierarchy(session_maker, municipality: str = "Toronto C01") -> dict[str, int]:
    """Central area -> one municipality -> two communities."""
    async with session_maker() as s:
        area = (await s.execute(select(Area).where(Area.name == "Central"))).scalar_one_or_none()
        if area is None:
            area = Area(name="Central")
            s.add(area)
            await s.flush()

        muni = Municipality(name=municipality, area_id=area.id)
        s.add(muni)
        await s.flush()

        waterfront = Community(name="Waterfront Communities C1", municipality_id=muni.id)
        bay = Community(name="Bay Street Corridor", municipality_id=muni.id)
        s.add_all([waterfront, bay])
        await s.commit()

        return {"area": area.id, "municipality": muni.id, "waterfront": waterfront.id, "bay": bay.id}


@pytest.fixture
async def hierarchy(async_session_maker) -> dict[str, int]:
    return await seed_hierarchy(async_session_maker)


def listing(
    number: str,
    street: str,
    *,
    suffix: str | None = "St",
    direction: str | None = "W",
    city: str = "Toronto C01",
    region: str = "Waterfront Communities C1",
    name: str | None = None,
) -> dict[str, Any]:
    return {
        "StreetNumber": number,
        "StreetName": street,
        "StreetSuffix": suffix,
        "StreetDirSuffix": direction,
        "City": city,
        "CityRegion": region,
        "BuildingName": name,
    }


class FakeFeed:
    """
    In-process stand-in for the RESO endpoint. Discovery queries page
    through `records`; BuildingName-only queries answer from `lookups`
    keyed by street number.
    """

    def __init__(
        self,
        records: list[dict[str, Any]] | None = None,
        *,
        lookups: dict[str, list[str]] | None = None,
        status_for: Callable[[httpx.Request], int | None] | None = None,
    ) -> None:
        self.records = list(records or [])
        self.lookups = dict(lookups or {})
        self.status_for = status_for
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_for is not None:
            status = self.status_for(request)
            if status is not None:
                return httpx.Response(status, json={"error": "nope"})

        params = request.url.params
        top = int(params.get("$top", "100"))
        skip = int(params.get("$skip", "0"))
        select = params.get("$select", "")

        if select == "BuildingName":
            flt = params.get("$filter", "")
            for number, names in self.lookups.items():
                if f"StreetNumber eq '{number}'" in flt:
                    return httpx.Response(200, json={"value": [{"BuildingName": n} for n in names]})
            return httpx.Response(200, json={"value": []})

        if select == "ListingKey":
            return httpx.Response(200, json={"value": [{"ListingKey": "X1"}]})

        return httpx.Response(200, json={"value": self.records[skip : skip + top]})


def make_client(handler, *, page_size: int = 5000) -> ResoWebApiClient:
    return ResoWebApiClient(
        base_url=FEED_URL,
        access_token="test-token",
        page_size=page_size,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
