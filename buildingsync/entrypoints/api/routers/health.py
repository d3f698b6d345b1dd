# buildingsync/entrypoints/api/routers/health.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import require_api_key
from ....config import FeedConfigError, settings, validate_feed_config
from ....db import get_session

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(session: AsyncSession = Depends(get_session)) -> JSONResponse:
    """
    Same checks a nightly run makes before it starts, minus the live feed call.
    """
    checks: dict[str, str] = {}
    try:
        await session.execute(select(1))
        checks["database"] = "ok"
    except SQLAlchemyError as e:
        checks["database"] = f"error: {e.__class__.__name__}"

    try:
        validate_feed_config()
        checks["feed_config"] = "ok"
    except FeedConfigError as e:
        checks["feed_config"] = f"error: {e}"

    ok = all(v == "ok" for v in checks.values())
    return JSONResponse({"status": "ok" if ok else "degraded", "checks": checks}, status_code=200 if ok else 503)


@router.get("/debug/config", dependencies=[Depends(require_api_key)])
def debug_config() -> dict[str, Any]:
    def _mask(v: str | None) -> str | None:
        if not v:
            return v
        return "***" if len(v) <= 8 else f"{v[:4]}***{v[-4:]}"

    return {
        "ENV": settings.ENV,
        "BUILDINGSYNC_DB_URL": settings.BUILDINGSYNC_DB_URL,
        "PROPTX_RESO_API_URL": settings.PROPTX_RESO_API_URL,
        "FEED_TOKEN": _mask(settings.feed_token),
        "FEED_PAGE_SIZE": settings.FEED_PAGE_SIZE,
        "ASSIGN_BATCH_SIZE": settings.ASSIGN_BATCH_SIZE,
        "MUNICIPALITY_CONCURRENCY": settings.MUNICIPALITY_CONCURRENCY,
        "CRON_SECRET_SET": bool(settings.CRON_SECRET),
    }
