# buildingsync/domain/clustering.py
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from .address import cluster_key


@dataclass
class BuildingCluster:
    """
    Listings that share (street_number, street_key) inside one municipality scope.
    Address parts come from the first listing seen for the key.
    """

    street_number: str
    street_key: str
    street_name: str
    street_suffix: str | None
    street_dir_suffix: str | None
    city: str | None
    feed_community: str
    listing_count: int = 0
    # insertion order doubles as first-seen order for tie breaking
    names: Counter = field(default_factory=Counter)

    @property
    def key(self) -> tuple[str, str]:
        return self.street_number.lower(), self.street_key

    def observe(self, building_name: Any) -> None:
        self.listing_count += 1
        if isinstance(building_name, str) and building_name.strip():
            self.names[building_name.strip()] += 1


@dataclass
class ClusteringResult:
    clusters: dict[tuple[str, str], BuildingCluster]
    records_seen: int = 0
    unclusterable: int = 0


def cluster_listings(records: Iterable[dict[str, Any]]) -> ClusteringResult:
    """
    Group raw feed records into building clusters.

    Records without a street number or a usable street key are counted as
    unclusterable and left out.
    """
    clusters: dict[tuple[str, str], BuildingCluster] = {}
    seen = dropped = 0

    for rec in records:
        seen += 1
        key = cluster_key(rec.get("StreetNumber"), rec.get("StreetName"))
        if key is None:
            dropped += 1
            continue

        cluster = clusters.get(key)
        if cluster is None:
            cluster = BuildingCluster(
                street_number=str(rec["StreetNumber"]).strip(),
                street_key=key[1],
                street_name=str(rec["StreetName"]).strip(),
                street_suffix=rec.get("StreetSuffix") or None,
                street_dir_suffix=rec.get("StreetDirSuffix") or None,
                city=rec.get("City"),
                feed_community=rec.get("CityRegion") or "",
            )
            clusters[key] = cluster

        cluster.observe(rec.get("BuildingName"))

    return ClusteringResult(clusters=clusters, records_seen=seen, unclusterable=dropped)
