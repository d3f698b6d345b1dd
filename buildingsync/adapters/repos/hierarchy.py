# buildingsync/adapters/repos/hierarchy.py
from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ...models import Area, CandidateStatus, Community, DiscoveredBuilding, Municipality

_SYNCED = (CandidateStatus.synced, CandidateStatus.db_linked)


class HierarchyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def municipality(self, municipality_id: int) -> Municipality | None:
        return await self.session.get(Municipality, municipality_id)

    async def area(self, area_id: int) -> Area | None:
        return await self.session.get(Area, area_id)

    async def community(self, community_id: int) -> Community | None:
        return await self.session.get(Community, community_id)

    async def communities(self, municipality_id: int) -> list[Community]:
        q = select(Community).where(Community.municipality_id == municipality_id).order_by(Community.id)
        return list((await self.session.execute(q)).scalars().all())

    async def municipalities(
        self,
        *,
        area_name: str | None = None,
        undiscovered_only: bool = False,
    ) -> list[Municipality]:
        q = select(Municipality).order_by(Municipality.name)
        if area_name and area_name.lower() != "all":
            area_ids = select(Area.id).where(func.lower(Area.name).like(f"%{area_name.lower()}%"))
            q = q.where(Municipality.area_id.in_(area_ids))
        if undiscovered_only:
            q = q.where(Municipality.buildings_discovered == 0)
        return list((await self.session.execute(q)).scalars().all())

    async def candidate_counts(self, column, scope_id: int) -> tuple[int, int]:
        """(discovered, synced) for every staged candidate whose `column` equals scope_id."""
        discovered = (
            await self.session.execute(
                select(func.count()).select_from(DiscoveredBuilding).where(column == scope_id)
            )
        ).scalar_one()
        synced = (
            await self.session.execute(
                select(func.count())
                .select_from(DiscoveredBuilding)
                .where(column == scope_id)
                .where(DiscoveredBuilding.status.in_(_SYNCED))
            )
        ).scalar_one()
        return int(discovered), int(synced)
