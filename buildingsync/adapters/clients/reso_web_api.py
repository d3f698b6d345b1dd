# buildingsync/adapters/clients/reso_web_api.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator
from urllib.parse import quote

import httpx

from ...config import settings
from ...domain.media import filter_two_variants
from .http_resilience import FeedAuthError, resilient_request

log = logging.getLogger(__name__)

DISCOVERY_SELECT = "StreetNumber,StreetName,StreetSuffix,StreetDirSuffix,City,CityRegion,BuildingName"
CONDO_SUBTYPE = "Condo Apartment"


def odata_literal(value: str) -> str:
    """Quote a string for an OData $filter (single quotes doubled)."""
    return "'" + str(value).replace("'", "''") + "'"


def discovery_filter(municipality: str, community: str | None = None) -> str:
    flt = f"City eq {odata_literal(municipality)} and PropertySubType eq {odata_literal(CONDO_SUBTYPE)}"
    if community:
        flt += f" and CityRegion eq {odata_literal(community)}"
    return flt


def name_lookup_filter(street_number: str, street_key: str, city: str | None) -> str:
    city_prefix = (city or "").split(" ")[0]
    return (
        f"StreetNumber eq {odata_literal(street_number)}"
        f" and contains(tolower(StreetName),{odata_literal(street_key)})"
        f" and contains(City,{odata_literal(city_prefix)})"
    )


@dataclass
class EnhancedData:
    rooms: list[dict[str, Any]] = field(default_factory=list)
    media: list[dict[str, Any]] = field(default_factory=list)
    open_houses: list[dict[str, Any]] = field(default_factory=list)


class ResoWebApiClient:
    """
    RESO Web API (OData) client for the listing feed.

    Stateless between calls: paging is driven by $skip, so any page boundary
    can be used as a restart point.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        access_token: str | None = None,
        page_size: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = ((base_url if base_url is not None else settings.PROPTX_RESO_API_URL) or "").rstrip("/")
        self.access_token = access_token if access_token is not None else settings.feed_token
        self.page_size = int(page_size or settings.FEED_PAGE_SIZE)
        self._client = client

    def _headers(self) -> dict[str, str]:
        if not self.access_token:
            return {"accept": "application/json"}
        return {"accept": "application/json", "authorization": f"Bearer {self.access_token}"}

    def _url(self, resource: str, *, flt: str | None, select: str | None, top: int, skip: int | None) -> str:
        # built by hand so spaces go out as %20, not "+"
        parts: list[str] = []
        if flt:
            parts.append(f"$filter={quote(flt, safe='')}")
        if select:
            parts.append(f"$select={select}")
        parts.append(f"$top={int(top)}")
        if skip:
            parts.append(f"$skip={int(skip)}")
        return f"{self.base_url}/{resource}?" + "&".join(parts)

    async def get_resource(
        self,
        resource: str,
        *,
        flt: str | None = None,
        select: str | None = None,
        top: int = 100,
        skip: int | None = None,
        max_retries: int | None = None,
    ) -> list[dict[str, Any]]:
        url = self._url(resource, flt=flt, select=select, top=top, skip=skip)
        resp = await resilient_request(
            "GET",
            url,
            headers=self._headers(),
            client=self._client,
            max_retries=max_retries,
            context=f"{resource} skip={skip or 0}",
        )
        data = resp.json()

        items = data.get("value") if isinstance(data, dict) else None
        if isinstance(items, list):
            return [x for x in items if isinstance(x, dict)]
        return []

    async def iter_pages(
        self,
        flt: str,
        select: str | None = None,
        *,
        start_skip: int = 0,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Yield pages until an empty or short page. A failed page ends the
        sequence (logged); auth failures propagate.
        """
        skip = start_skip
        while True:
            try:
                page = await self.get_resource("Property", flt=flt, select=select, top=self.page_size, skip=skip)
            except FeedAuthError:
                raise
            except (httpx.HTTPError, ValueError) as e:
                log.warning("feed paging stopped at skip=%s: %s", skip, e)
                return

            if not page:
                return
            yield page
            if len(page) < self.page_size:
                return
            skip += self.page_size

    async def fetch_all(self, flt: str, select: str | None = None, *, start_skip: int = 0) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        async for page in self.iter_pages(flt, select, start_skip=start_skip):
            out.extend(page)
        return out

    async def fetch_single(self, flt: str, select: str | None = None, *, top: int | None = None) -> list[dict[str, Any]]:
        """One page, no paging. Failures other than auth come back as []."""
        try:
            return await self.get_resource(
                "Property", flt=flt, select=select, top=int(top or settings.FEED_NAME_LOOKUP_TOP)
            )
        except FeedAuthError:
            raise
        except (httpx.HTTPError, ValueError) as e:
            log.warning("feed lookup failed (%s): %s", flt, e)
            return []

    async def _sub_resource(self, resource: str, flt: str, top: int) -> list[dict[str, Any]]:
        try:
            return await self.get_resource(resource, flt=flt, top=top, max_retries=1)
        except (httpx.HTTPError, FeedAuthError, ValueError) as e:
            log.warning("%s fetch failed (%s): %s", resource, flt, e)
            return []

    async def fetch_enhanced(self, listing_key: str) -> EnhancedData:
        key = odata_literal(listing_key)
        rooms, media, open_houses = await asyncio.gather(
            self._sub_resource("PropertyRooms", f"ListingKey eq {key}", 50),
            self._sub_resource("Media", f"ResourceRecordKey eq {key}", 500),
            self._sub_resource("OpenHouse", f"ListingKey eq {key}", 20),
        )
        return EnhancedData(rooms=rooms, media=filter_two_variants(media), open_houses=open_houses)

    async def fetch_enhanced_data(self, listing_keys: list[str], batch_size: int | None = None) -> dict[str, EnhancedData]:
        """Rooms / media / open houses per listing key, one concurrent batch at a time."""
        size = max(1, int(batch_size or settings.ENHANCED_BATCH_SIZE))
        keys = [k for k in listing_keys if k]
        out: dict[str, EnhancedData] = {}
        for i in range(0, len(keys), size):
            batch = keys[i : i + size]
            results = await asyncio.gather(*(self.fetch_enhanced(k) for k in batch))
            out.update(zip(batch, results))
        return out

    async def test_connection(self) -> bool:
        if not self.base_url:
            return False
        try:
            await self.get_resource("Property", select="ListingKey", top=1, max_retries=1)
            return True
        except (httpx.HTTPError, FeedAuthError, ValueError) as e:
            log.error("feed connection test failed: %s", e)
            return False
