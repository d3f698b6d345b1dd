# buildingsync/adapters/repos/buildings.py
from __future__ import annotations

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...domain.address import street_key
from ...models import Building


class BuildingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, building_id: int) -> Building | None:
        return await self.session.get(Building, building_id)

    async def get_by_slug(self, slug: str) -> Building | None:
        q = select(Building).where(Building.slug == slug)
        return (await self.session.execute(q)).scalars().first()

    async def canonical_index(self) -> tuple[set[str], set[tuple[str, str]]]:
        """
        (slugs, address keys) of every canonical building. Address keys use
        the same (street_number, street_key) shape as discovery clusters.
        """
        rows = (await self.session.execute(select(Building.slug, Building.street_number, Building.street_name))).all()
        slugs: set[str] = set()
        keys: set[tuple[str, str]] = set()
        for slug, number, name in rows:
            slugs.add(slug)
            sk = street_key(name)
            if number and sk:
                keys.add((str(number).strip().lower(), sk))
        return slugs, keys

    async def count(self) -> int:
        return int((await self.session.execute(select(func.count()).select_from(Building))).scalar_one())

    async def set_photos(self, building_id: int, photos: list[str]) -> None:
        stmt = (
            update(Building)
            .where(Building.id == building_id)
            .values(cover_photo_url=photos[0] if photos else None, gallery_photos=photos)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)
