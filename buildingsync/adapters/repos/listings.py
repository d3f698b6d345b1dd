# buildingsync/adapters/repos/listings.py
from __future__ import annotations

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ...domain.media import PhotoRow
from ...models import Media, MlsListing

THUMBNAIL_LISTING_SCAN = 20


class ListingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def link_by_address(
        self,
        *,
        building_id: int,
        street_number: str,
        street_word: str,
        city_word: str,
    ) -> int:
        """
        Link catalog listings to a building in one UPDATE statement so that
        concurrent candidates cannot interleave a read-modify-write. Listings
        already linked to a different building are left alone.
        Returns the number of rows now pointing at the building.
        """
        stmt = (
            update(MlsListing)
            .where(MlsListing.street_number == street_number)
            .where(func.lower(MlsListing.street_name).startswith(street_word, autoescape=True))
            .where(func.lower(MlsListing.city).startswith(city_word, autoescape=True))
            .where(or_(MlsListing.building_id.is_(None), MlsListing.building_id == building_id))
            .values(building_id=building_id)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return int(res.rowcount or 0)

    async def backfill_geo(self, *, building_id: int, area_id: int, municipality_id: int, community_id: int) -> int:
        stmt = (
            update(MlsListing)
            .where(MlsListing.building_id == building_id)
            .values(area_id=area_id, municipality_id=municipality_id, community_id=community_id)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(stmt)
        return int(res.rowcount or 0)

    async def listing_ids_for_building(self, building_id: int, limit: int = THUMBNAIL_LISTING_SCAN) -> list[int]:
        q = select(MlsListing.id).where(MlsListing.building_id == building_id).order_by(MlsListing.id).limit(limit)
        return list((await self.session.execute(q)).scalars().all())

    async def primary_thumbnails(self, listing_ids: list[int]) -> list[PhotoRow]:
        q = (
            select(Media.listing_id, Media.media_url, Media.order_number)
            .where(Media.listing_id.in_(listing_ids))
            .where(Media.variant_type == "thumbnail")
            .where(Media.order_number == 1)
            .order_by(Media.listing_id)
        )
        return [PhotoRow(*r) for r in (await self.session.execute(q)).all()]

    async def earliest_thumbnails(self, listing_ids: list[int], limit: int = THUMBNAIL_LISTING_SCAN) -> list[PhotoRow]:
        q = (
            select(Media.listing_id, Media.media_url, Media.order_number)
            .where(Media.listing_id.in_(listing_ids))
            .where(Media.variant_type == "thumbnail")
            .order_by(Media.order_number.asc(), Media.id.asc())
            .limit(limit)
        )
        return [PhotoRow(*r) for r in (await self.session.execute(q)).all()]

    async def counts(self) -> tuple[int, int]:
        """(total listings, listings linked to a building)"""
        total = (await self.session.execute(select(func.count()).select_from(MlsListing))).scalar_one()
        linked = (
            await self.session.execute(
                select(func.count()).select_from(MlsListing).where(MlsListing.building_id.is_not(None))
            )
        ).scalar_one()
        return int(total), int(linked)
