# buildingsync/service_layer/hierarchy.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..adapters.repos.hierarchy import HierarchyRepository
from ..domain.policies import rollup_status
from ..models import DiscoveredBuilding, DiscoveryStatus

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class HierarchyCounts:
    scope: str  # area|municipality|community
    scope_id: int
    buildings_discovered: int
    buildings_synced: int
    discovery_status: DiscoveryStatus
    applied: bool = True


def _apply(row, scope: str, discovered: int, synced: int, *, allow_decrease: bool, now: datetime | None) -> HierarchyCounts:
    prior_d = int(row.buildings_discovered or 0)
    prior_s = int(row.buildings_synced or 0)
    if not allow_decrease and (discovered < prior_d or synced < prior_s):
        log.warning(
            "%s %s recount would lower counts (%s/%s -> %s/%s); keeping prior values",
            scope, row.id, prior_d, prior_s, discovered, synced,
        )
        return HierarchyCounts(scope, row.id, prior_d, prior_s, row.discovery_status, applied=False)

    status = rollup_status(discovered, synced)
    row.buildings_discovered = discovered
    row.buildings_synced = synced
    row.discovery_status = status
    if now is not None:
        row.last_discovery_at = now
    return HierarchyCounts(scope, row.id, discovered, synced, status)


async def recount_hierarchy(
    session: AsyncSession,
    *,
    municipality_id: int,
    area_id: int | None,
    allow_decrease: bool = False,
    now: datetime | None = None,
) -> list[HierarchyCounts]:
    """
    Recompute rollup counts for every community of the municipality, the
    municipality itself and its area by re-scanning staged candidates.
    Nothing is patched incrementally. A recount that would lower a scope's
    counts is refused unless allow_decrease is set.
    """
    repo = HierarchyRepository(session)
    out: list[HierarchyCounts] = []

    for comm in await repo.communities(municipality_id):
        d, s = await repo.candidate_counts(DiscoveredBuilding.community_id, comm.id)
        out.append(_apply(comm, "community", d, s, allow_decrease=allow_decrease, now=None))

    muni = await repo.municipality(municipality_id)
    if muni is not None:
        d, s = await repo.candidate_counts(DiscoveredBuilding.municipality_id, muni.id)
        out.append(_apply(muni, "municipality", d, s, allow_decrease=allow_decrease, now=now))

    if area_id is not None:
        area = await repo.area(area_id)
        if area is not None:
            d, s = await repo.candidate_counts(DiscoveredBuilding.area_id, area.id)
            out.append(_apply(area, "area", d, s, allow_decrease=allow_decrease, now=None))

    await session.flush()
    return out
