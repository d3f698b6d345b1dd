# buildingsync/adapters/repos/candidates.py
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import CandidateStatus, DiscoveredBuilding

IDENTITY_FIELDS = ("street_number", "street_key", "municipality_id")


def identity_of(row: DiscoveredBuilding) -> tuple[str, str]:
    return row.street_number.lower(), row.street_key


class CandidateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, candidate_id: int) -> DiscoveredBuilding | None:
        return await self.session.get(DiscoveredBuilding, candidate_id)

    async def get_many(self, ids: list[int]) -> list[DiscoveredBuilding]:
        if not ids:
            return []
        q = select(DiscoveredBuilding).where(DiscoveredBuilding.id.in_(ids)).order_by(DiscoveredBuilding.id)
        return list((await self.session.execute(q)).scalars().all())

    async def by_identity(self, municipality_id: int) -> dict[tuple[str, str], DiscoveredBuilding]:
        q = select(DiscoveredBuilding).where(DiscoveredBuilding.municipality_id == municipality_id)
        rows = (await self.session.execute(q)).scalars().all()
        return {identity_of(r): r for r in rows}

    async def list_scope(self, municipality_id: int, community_id: int | None = None) -> list[DiscoveredBuilding]:
        q = select(DiscoveredBuilding).where(DiscoveredBuilding.municipality_id == municipality_id)
        if community_id is not None:
            q = q.where(DiscoveredBuilding.community_id == community_id)
        q = q.order_by(DiscoveredBuilding.building_name.is_(None), DiscoveredBuilding.building_name, DiscoveredBuilding.id)
        return list((await self.session.execute(q)).scalars().all())

    async def assignable_ids(self, municipality_id: int, *, include_failed: bool = False) -> list[int]:
        statuses = [CandidateStatus.pending]
        if include_failed:
            statuses.append(CandidateStatus.failed)
        q = (
            select(DiscoveredBuilding.id)
            .where(DiscoveredBuilding.municipality_id == municipality_id)
            .where(DiscoveredBuilding.status.in_(statuses))
            .order_by(DiscoveredBuilding.id)
        )
        return list((await self.session.execute(q)).scalars().all())

    async def upsert(
        self,
        existing: DiscoveredBuilding | None,
        values: dict[str, Any],
        *,
        now: datetime,
    ) -> DiscoveredBuilding:
        """
        Insert or update on the composite identity. Identity columns of an
        existing row are never rewritten.
        """
        if existing is None:
            row = DiscoveredBuilding(**values, discovered_at=now, updated_at=now)
            self.session.add(row)
            return row

        for k, v in values.items():
            if k in IDENTITY_FIELDS:
                continue
            setattr(existing, k, v)
        existing.discovered_at = now
        existing.updated_at = now
        return existing
