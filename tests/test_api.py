import httpx
import pytest

from buildingsync.config import settings
from buildingsync.db import get_session
from buildingsync.entrypoints.api.deps import get_feed_client, get_session_maker
from buildingsync.entrypoints.fastapi_app import create_app
from buildingsync.service_layer.progress import decode_event_stream

from conftest import FakeFeed, listing, make_client

KEY = {"X-API-Key": "test-key"}


@pytest.fixture
def app(async_session_maker, monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", "test-key")
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

    app = create_app()

    async def _session():
        async with async_session_maker() as s:
            yield s

    feed = FakeFeed(
        [
            listing("100", "King", name="X2 Condos"),
            listing("55", "Bremner", suffix="Blvd", direction=None, region="Bay Street Corridor"),
        ]
    )
    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_session_maker] = lambda: async_session_maker
    app.dependency_overrides[get_feed_client] = lambda: make_client(feed)
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


async def test_ready_reports_missing_feed_config(client, monkeypatch):
    monkeypatch.setattr(settings, "PROPTX_RESO_API_URL", None)

    r = await client.get("/health/ready")
    assert r.status_code == 503
    body = r.json()
    assert body["status"] == "degraded"
    assert body["checks"]["database"] == "ok"
    assert "PROPTX_RESO_API_URL" in body["checks"]["feed_config"]


async def test_ready_when_db_and_feed_config_present(client, monkeypatch):
    monkeypatch.setattr(settings, "PROPTX_RESO_API_URL", "https://feed.test/odata")
    monkeypatch.setattr(settings, "PROPTX_VOW_TOKEN", None)
    monkeypatch.setattr(settings, "PROPTX_DLA_TOKEN", "dla-token")

    r = await client.get("/health/ready")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "checks": {"database": "ok", "feed_config": "ok"}}


async def test_admin_routes_require_api_key(client, hierarchy):
    r = await client.post("/admin/discovery/discover", json={"municipality_id": hierarchy["municipality"]})
    assert r.status_code == 401


async def test_discover_then_list_then_assign(client, hierarchy):
    r = await client.post(
        "/admin/discovery/discover", json={"municipality_id": hierarchy["municipality"]}, headers=KEY
    )
    assert r.status_code == 200
    body = r.json()
    assert body["summary"]["total"] == 2
    assert body["summary"]["withoutNames"] == 1
    assert {c["scope"] for c in body["counts"]} == {"community", "municipality", "area"}

    r = await client.get(
        "/admin/discovery/buildings", params={"municipality_id": hierarchy["municipality"]}, headers=KEY
    )
    assert r.status_code == 200
    buildings = r.json()
    # named candidates first
    assert [b["building_name"] for b in buildings] == ["X2 Condos", None]
    assert buildings[0]["status"] == "pending"

    ids = [b["id"] for b in buildings]
    r = await client.post("/admin/discovery/assign", json={"building_ids": ids}, headers=KEY)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    events = list(decode_event_stream(r.text.splitlines()))
    assert events[-1]["type"] == "complete"
    assert events[-1]["progress"]["completed"] == 2
    assert {e["status"] for e in events if e["type"] == "progress"} == {"syncing", "db_linked"}


async def test_discover_unknown_municipality_is_404(client, hierarchy):
    r = await client.post("/admin/discovery/discover", json={"municipality_id": 9999}, headers=KEY)
    assert r.status_code == 404


async def test_assign_unknown_ids_streams_error_event(client):
    r = await client.post("/admin/discovery/assign", json={"building_ids": [123]}, headers=KEY)
    events = list(decode_event_stream(r.text.splitlines()))
    assert events == [{"type": "error", "message": "No buildings found for the given ids"}]


async def test_cron_requires_bearer_secret(client, hierarchy):
    r = await client.get("/cron/nightly")
    assert r.status_code == 401

    r = await client.get("/cron/nightly", headers={"Authorization": "Bearer cron-secret"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert body["exit_code"] == 0
    assert body["summary"]["discovery"]["buildings"] == 2


async def test_feed_config_error_is_500(app, client, hierarchy, monkeypatch):
    del app.dependency_overrides[get_feed_client]
    monkeypatch.setattr(settings, "PROPTX_RESO_API_URL", None)

    r = await client.post(
        "/admin/discovery/discover", json={"municipality_id": hierarchy["municipality"]}, headers=KEY
    )
    assert r.status_code == 500
    assert "PROPTX_RESO_API_URL" in r.json()["detail"]


async def test_debug_config_masks_feed_token(client, monkeypatch):
    monkeypatch.setattr(settings, "PROPTX_VOW_TOKEN", "abcd1234efgh5678")

    r = await client.get("/debug/config")
    assert r.status_code == 401

    r = await client.get("/debug/config", headers=KEY)
    assert r.status_code == 200
    body = r.json()
    assert body["FEED_TOKEN"] == "abcd***5678"
    assert body["CRON_SECRET_SET"] is True
