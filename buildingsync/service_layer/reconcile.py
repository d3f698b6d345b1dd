# buildingsync/service_layer/reconcile.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from ..adapters.repos.buildings import BuildingRepository
from ..adapters.repos.candidates import CandidateRepository
from ..config import settings
from ..domain.address import building_slug, full_street_name
from ..domain.clustering import BuildingCluster
from ..domain.policies import StagedName, merge_name, merge_status
from ..models import CandidateStatus, NameSource


@dataclass(frozen=True)
class ResolvedName:
    name: str | None
    source: NameSource | None


@dataclass(frozen=True)
class ReconcileScope:
    municipality_id: int
    municipality_name: str
    area_id: int | None
    area_name: str | None
    community_id: int | None = None
    # lower-cased community name -> id
    community_map: dict[str, int] = field(default_factory=dict)


@dataclass
class ReconcileStats:
    inserted: int = 0
    updated: int = 0
    manual_names_kept: int = 0
    promoted_to_synced: int = 0


async def reconcile_clusters(
    session: AsyncSession,
    scope: ReconcileScope,
    clusters: dict[tuple[str, str], BuildingCluster],
    names: dict[tuple[str, str], ResolvedName],
    *,
    now: datetime,
) -> ReconcileStats:
    """Merge fresh clusters into staged candidates for one municipality."""
    repo = CandidateRepository(session)
    existing = await repo.by_identity(scope.municipality_id)
    slugs, address_keys = await BuildingRepository(session).canonical_index()

    stats = ReconcileStats()
    batch = max(1, int(settings.UPSERT_BATCH_SIZE))

    for i, (key, cluster) in enumerate(clusters.items(), start=1):
        prior = existing.get(key)
        resolved = names.get(key) or ResolvedName(None, None)

        staged = None
        if prior is not None:
            staged = StagedName(prior.building_name, prior.building_name_original, prior.name_source)
        merged = merge_name(resolved.name, resolved.source, staged)
        if merged.name_source == NameSource.manual:
            stats.manual_names_kept += 1

        full = full_street_name(cluster.street_name, cluster.street_suffix, cluster.street_dir_suffix)
        slug = building_slug(merged.building_name, cluster.street_number, full, cluster.city)
        canonical_match = key in address_keys or slug in slugs

        prior_status = prior.status if prior is not None else None
        status = merge_status(prior_status, canonical_match=canonical_match)
        if status == CandidateStatus.synced and prior_status not in (CandidateStatus.synced, None):
            stats.promoted_to_synced += 1

        mapped_community = scope.community_id or scope.community_map.get(cluster.feed_community.lower())

        values = {
            "area_id": scope.area_id,
            "municipality_id": scope.municipality_id,
            "community_id": (prior.community_id if prior is not None else None) or mapped_community,
            "street_number": cluster.street_number,
            "street_key": cluster.street_key,
            "street_name": cluster.street_name,
            "street_suffix": cluster.street_suffix,
            "street_dir_suffix": cluster.street_dir_suffix,
            "city": cluster.city,
            "building_name": merged.building_name,
            "building_name_original": merged.building_name_original,
            "name_source": merged.name_source,
            "name_uncertain": merged.name_uncertain,
            "feed_area": scope.area_name,
            "feed_municipality": scope.municipality_name,
            "feed_community": cluster.feed_community,
            "listing_count": cluster.listing_count,
            "status": status,
        }
        await repo.upsert(prior, values, now=now)

        if prior is None:
            stats.inserted += 1
        else:
            stats.updated += 1

        if i % batch == 0:
            await session.flush()

    await session.flush()
    return stats
