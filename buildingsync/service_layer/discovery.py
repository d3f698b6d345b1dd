# buildingsync/service_layer/discovery.py
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..adapters.clients.reso_web_api import (
    DISCOVERY_SELECT,
    ResoWebApiClient,
    discovery_filter,
    name_lookup_filter,
)
from ..adapters.repos.candidates import CandidateRepository
from ..adapters.repos.hierarchy import HierarchyRepository
from ..config import settings
from ..domain.clustering import BuildingCluster, cluster_listings
from ..domain.naming import count_names, majority_name
from ..models import CandidateStatus, DiscoveredBuilding, NameSource
from .hierarchy import HierarchyCounts, recount_hierarchy
from .reconcile import ReconcileScope, ReconcileStats, ResolvedName, reconcile_clusters

log = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    municipality_id: int
    community_id: int | None
    listings_searched: int = 0
    unclusterable: int = 0
    names_found_via_search: int = 0
    skipped_empty_feed: bool = False
    reconcile: ReconcileStats = field(default_factory=ReconcileStats)
    counts: list[HierarchyCounts] = field(default_factory=list)
    buildings: list[DiscoveredBuilding] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        by_status = Counter(b.status.value for b in self.buildings)
        with_names = sum(1 for b in self.buildings if b.building_name)
        return {
            "total": len(self.buildings),
            "withNames": with_names,
            "withoutNames": len(self.buildings) - with_names,
            "pending": by_status.get(CandidateStatus.pending.value, 0),
            "synced": by_status.get(CandidateStatus.synced.value, 0),
            "dbLinked": by_status.get(CandidateStatus.db_linked.value, 0),
            "failed": by_status.get(CandidateStatus.failed.value, 0),
            "listingsSearched": self.listings_searched,
            "unclusterable": self.unclusterable,
            "namesFoundViaSearch": self.names_found_via_search,
            "skippedEmptyFeed": self.skipped_empty_feed,
        }


async def _lookup_name(feed: ResoWebApiClient, cluster: BuildingCluster) -> str | None:
    rows = await feed.fetch_single(
        name_lookup_filter(cluster.street_number, cluster.street_key, cluster.city),
        "BuildingName",
    )
    return majority_name(count_names(rows))


async def resolve_names(
    feed: ResoWebApiClient,
    clusters: dict[tuple[str, str], BuildingCluster],
    *,
    batch_size: int | None = None,
) -> tuple[dict[tuple[str, str], ResolvedName], int]:
    """
    Majority vote per cluster; clusters with no named observation get one
    targeted lookup, run in concurrent batches.
    Returns (names by cluster key, names found by targeted lookup).
    """
    out: dict[tuple[str, str], ResolvedName] = {}
    unnamed: list[tuple[tuple[str, str], BuildingCluster]] = []

    for key, cluster in clusters.items():
        name = majority_name(cluster.names)
        if name:
            out[key] = ResolvedName(name, NameSource.majority)
        else:
            unnamed.append((key, cluster))

    size = max(1, int(batch_size or settings.NAME_LOOKUP_BATCH_SIZE))
    found = 0
    for i in range(0, len(unnamed), size):
        batch = unnamed[i : i + size]
        names = await asyncio.gather(*(_lookup_name(feed, c) for _, c in batch))
        for (key, cluster), name in zip(batch, names):
            if name:
                found += 1
                out[key] = ResolvedName(name, NameSource.targeted_search)
                log.debug("targeted name %s %s -> %r", cluster.street_number, cluster.street_key, name)
            else:
                out[key] = ResolvedName(None, None)

    return out, found


async def _load_scope(session: AsyncSession, municipality_id: int, community_id: int | None) -> tuple[ReconcileScope, str | None]:
    hier = HierarchyRepository(session)
    muni = await hier.municipality(municipality_id)
    if muni is None:
        raise ValueError(f"Municipality {municipality_id} not found")

    area = await hier.area(muni.area_id) if muni.area_id is not None else None

    community_name: str | None = None
    if community_id is not None:
        comm = await hier.community(community_id)
        if comm is None or comm.municipality_id != muni.id:
            raise ValueError(f"Community {community_id} not found in municipality {muni.id}")
        community_name = comm.name

    community_map = {c.name.lower(): c.id for c in await hier.communities(muni.id)}
    scope = ReconcileScope(
        municipality_id=muni.id,
        municipality_name=muni.name,
        area_id=muni.area_id,
        area_name=area.name if area is not None else None,
        community_id=community_id,
        community_map=community_map,
    )
    return scope, community_name


async def discover_municipality(
    session: AsyncSession,
    *,
    municipality_id: int,
    feed: ResoWebApiClient,
    community_id: int | None = None,
    allow_count_decrease: bool = False,
    now: datetime | None = None,
) -> DiscoveryResult:
    """
    Discovery for one municipality (optionally one community):

      1) fetch every condo listing for the scope (all statuses, paged)
      2) cluster by (street_number, street_key)
      3) majority-vote names, targeted lookup for unnamed clusters
      4) merge into discovered_buildings
      5) recount hierarchy rollups

    An empty feed result leaves staged rows and counts untouched unless
    allow_count_decrease is set. The caller commits.
    """
    now = now or datetime.utcnow()
    scope, community_name = await _load_scope(session, municipality_id, community_id)
    result = DiscoveryResult(municipality_id=municipality_id, community_id=community_id)

    log.info("discovering buildings: municipality=%s community=%s", scope.municipality_name, community_name)
    records = await feed.fetch_all(discovery_filter(scope.municipality_name, community_name), DISCOVERY_SELECT)
    result.listings_searched = len(records)

    clustering = cluster_listings(records)
    result.unclusterable = clustering.unclusterable
    log.info(
        "%s: %s listings -> %s clusters (%s unclusterable)",
        scope.municipality_name, len(records), len(clustering.clusters), clustering.unclusterable,
    )

    if not clustering.clusters and not allow_count_decrease:
        log.warning("%s: feed returned no clusterable listings; staged rows left as-is", scope.municipality_name)
        result.skipped_empty_feed = True
        result.buildings = await CandidateRepository(session).list_scope(municipality_id, community_id)
        return result

    names, result.names_found_via_search = await resolve_names(feed, clustering.clusters)

    for attempt in (1, 2):
        try:
            result.reconcile = await reconcile_clusters(session, scope, clustering.clusters, names, now=now)
            break
        except IntegrityError:
            # another writer inserted the same identity; re-read and merge over it
            await session.rollback()
            if attempt == 2:
                raise
            log.warning("%s: upsert conflict, retrying against fresh rows", scope.municipality_name)

    result.counts = await recount_hierarchy(
        session,
        municipality_id=scope.municipality_id,
        area_id=scope.area_id,
        allow_decrease=allow_count_decrease,
        now=now,
    )
    result.buildings = await CandidateRepository(session).list_scope(municipality_id, community_id)
    return result


def summarize_counts(counts: Iterable[HierarchyCounts]) -> list[dict[str, Any]]:
    return [
        {
            "scope": c.scope,
            "id": c.scope_id,
            "buildings_discovered": c.buildings_discovered,
            "buildings_synced": c.buildings_synced,
            "discovery_status": c.discovery_status.value,
            "applied": c.applied,
        }
        for c in counts
    ]
