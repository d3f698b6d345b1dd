# buildingsync/entrypoints/api/deps.py
from __future__ import annotations

import logging

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...adapters.clients.reso_web_api import ResoWebApiClient
from ...config import FeedConfigError, settings, validate_feed_config
from ...db import AsyncSessionLocal

log = logging.getLogger(__name__)


def require_api_key(x_api_key: str | None = Header(default=None, alias="X-API-Key")) -> None:
    if settings.API_KEY:
        if not x_api_key or x_api_key != settings.API_KEY:
            raise HTTPException(status_code=401, detail="Invalid API key")


def require_cron_secret(authorization: str | None = Header(default=None)) -> None:
    # Authorization: Bearer <CRON_SECRET>
    if not settings.CRON_SECRET:
        log.warning("CRON_SECRET not set; cron route is unauthenticated")
        return
    if authorization != f"Bearer {settings.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    # streaming routes outlive the request-scoped session, so they open their own
    return AsyncSessionLocal


def get_feed_client() -> ResoWebApiClient:
    try:
        validate_feed_config()
    except FeedConfigError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return ResoWebApiClient()
