# buildingsync/entrypoints/api/routers/discovery.py
from __future__ import annotations

from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..deps import get_feed_client, get_session_maker, require_api_key
from ....adapters.clients.http_resilience import FeedAuthError
from ....adapters.clients.reso_web_api import ResoWebApiClient
from ....adapters.repos.candidates import CandidateRepository
from ....db import get_session
from ....schemas import AssignRequest, CandidateOut, DiscoverRequest, DiscoverResult, ErrorEvent
from ....service_layer.assignment import assign_candidates
from ....service_layer.discovery import discover_municipality, summarize_counts
from ....service_layer.jobruns import fail_run, finish_run, start_run
from ....service_layer.progress import encode_event

router = APIRouter(prefix="/admin/discovery", tags=["discovery"])


@router.post("/discover", response_model=DiscoverResult, dependencies=[Depends(require_api_key)])
async def discover(
    body: DiscoverRequest,
    session: AsyncSession = Depends(get_session),
    feed: ResoWebApiClient = Depends(get_feed_client),
) -> DiscoverResult:
    run = await start_run(session, "discovery", triggered_by="api", municipality_id=body.municipality_id)
    await session.commit()
    try:
        res = await discover_municipality(
            session,
            municipality_id=body.municipality_id,
            community_id=body.community_id,
            feed=feed,
            allow_count_decrease=body.allow_count_decrease,
        )
        await finish_run(session, run, res.summary())
        await session.commit()
    except ValueError as e:
        await session.rollback()
        await fail_run(session, run, e)
        await session.commit()
        raise HTTPException(status_code=404, detail=str(e)) from e
    except FeedAuthError as e:
        await session.rollback()
        await fail_run(session, run, e)
        await session.commit()
        raise HTTPException(status_code=502, detail=str(e)) from e
    except Exception as e:
        await session.rollback()
        await fail_run(session, run, e)
        await session.commit()
        raise

    return DiscoverResult(
        municipality_id=res.municipality_id,
        community_id=res.community_id,
        summary=res.summary(),
        counts=summarize_counts(res.counts),
        buildings=[CandidateOut.model_validate(b) for b in res.buildings],
    )


@router.get("/buildings", response_model=list[CandidateOut], dependencies=[Depends(require_api_key)])
async def list_buildings(
    municipality_id: int = Query(...),
    community_id: int | None = Query(None),
    session: AsyncSession = Depends(get_session),
) -> list[CandidateOut]:
    rows = await CandidateRepository(session).list_scope(municipality_id, community_id)
    return [CandidateOut.model_validate(r) for r in rows]


@router.post("/assign", dependencies=[Depends(require_api_key)])
async def assign(
    body: AssignRequest,
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
) -> StreamingResponse:
    async def _stream() -> AsyncIterator[str]:
        try:
            async for event in assign_candidates(session_maker, body.building_ids, batch_size=body.batch_size):
                yield encode_event(event)
        except Exception as e:
            yield encode_event(ErrorEvent(message=str(e)))

    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
