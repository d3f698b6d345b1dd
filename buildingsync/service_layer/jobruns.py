# buildingsync/service_layer/jobruns.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import SyncHistory, SyncRunStatus


async def start_run(
    session: AsyncSession,
    sync_type: str,
    *,
    triggered_by: str | None = None,
    municipality_id: int | None = None,
) -> SyncHistory:
    run = SyncHistory(
        sync_type=sync_type,
        status=SyncRunStatus.running,
        triggered_by=triggered_by,
        municipality_id=municipality_id,
        started_at=datetime.utcnow(),
    )
    session.add(run)
    await session.flush()
    return run


async def finish_run(
    session: AsyncSession,
    run: SyncHistory,
    summary: dict[str, Any],
    status: SyncRunStatus = SyncRunStatus.completed,
    error: str | None = None,
) -> None:
    run.status = status
    run.finished_at = datetime.utcnow()
    run.summary_json = json.dumps(summary, default=str)
    run.error = error
    await session.flush()


async def fail_run(session: AsyncSession, run: SyncHistory, err: Exception, summary: dict[str, Any] | None = None) -> None:
    run.status = SyncRunStatus.failed
    run.finished_at = datetime.utcnow()
    run.error = str(err)
    if summary is not None:
        run.summary_json = json.dumps(summary, default=str)
    await session.flush()
