# buildingsync/entrypoints/api/routers/cron.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..deps import get_feed_client, get_session_maker, require_cron_secret
from ....adapters.clients.reso_web_api import ResoWebApiClient
from ....schemas import NightlyResult
from ....service_layer.orchestrator import NightlyOptions, PreflightError, run_nightly

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get("/nightly", response_model=NightlyResult, dependencies=[Depends(require_cron_secret)])
async def nightly(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
    feed: ResoWebApiClient = Depends(get_feed_client),
) -> NightlyResult:
    try:
        report = await run_nightly(session_maker, feed=feed, options=NightlyOptions(triggered_by="cron"))
    except PreflightError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e

    return NightlyResult(
        status=report.status.value,
        exit_code=report.exit_code,
        run_id=report.run_id,
        summary=report.summary(),
    )
