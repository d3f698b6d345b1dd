# buildingsync/models.py
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# -----------------------------
# Core enums
# -----------------------------
class CandidateStatus(str, enum.Enum):
    pending = "pending"
    syncing = "syncing"
    synced = "synced"
    db_linked = "db_linked"
    failed = "failed"


class NameSource(str, enum.Enum):
    majority = "majority"
    targeted_search = "targeted-search"
    manual = "manual"


class DiscoveryStatus(str, enum.Enum):
    not_started = "not_started"
    discovered = "discovered"
    complete = "complete"


class SyncRunStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    partial = "partial"
    failed = "failed"


# -----------------------------
# Geography hierarchy (area -> municipality -> community)
# -----------------------------
class _RollupColumns:
    buildings_discovered: Mapped[int] = mapped_column(Integer, default=0)
    buildings_synced: Mapped[int] = mapped_column(Integer, default=0)
    discovery_status: Mapped[DiscoveryStatus] = mapped_column(
        Enum(DiscoveryStatus), default=DiscoveryStatus.not_started
    )
    last_discovery_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Area(_RollupColumns, Base):
    __tablename__ = "treb_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), unique=True)


class Municipality(_RollupColumns, Base):
    __tablename__ = "municipalities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), index=True)
    area_id: Mapped[int | None] = mapped_column(ForeignKey("treb_areas.id"), nullable=True, index=True)


class Community(_RollupColumns, Base):
    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    municipality_id: Mapped[int] = mapped_column(ForeignKey("municipalities.id"), index=True)


# -----------------------------
# Staging + canonical catalog
# -----------------------------
class DiscoveredBuilding(Base):
    """
    Staged building candidate produced by discovery.
    Identity is (street_number, street_key, municipality_id).
    """
    __tablename__ = "discovered_buildings"
    __table_args__ = (
        UniqueConstraint("street_number", "street_key", "municipality_id", name="uq_discovered_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    area_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    municipality_id: Mapped[int] = mapped_column(Integer, index=True)
    community_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    street_number: Mapped[str] = mapped_column(String(20))
    street_key: Mapped[str] = mapped_column(String(80))
    street_name: Mapped[str] = mapped_column(String(120))
    street_suffix: Mapped[str | None] = mapped_column(String(40), nullable=True)
    street_dir_suffix: Mapped[str | None] = mapped_column(String(10), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)

    building_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # last machine-resolved name, kept for audit even when an operator overrides building_name
    building_name_original: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name_source: Mapped[NameSource | None] = mapped_column(Enum(NameSource), nullable=True)
    name_uncertain: Mapped[bool] = mapped_column(Boolean, default=False)

    feed_area: Mapped[str | None] = mapped_column(String(120), nullable=True)
    feed_municipality: Mapped[str | None] = mapped_column(String(120), nullable=True)
    feed_community: Mapped[str | None] = mapped_column(String(120), nullable=True)

    listing_count: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[CandidateStatus] = mapped_column(
        Enum(CandidateStatus), default=CandidateStatus.pending, index=True
    )
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    building_id: Mapped[int | None] = mapped_column(ForeignKey("buildings.id"), nullable=True)

    discovered_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Building(Base):
    __tablename__ = "buildings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True)

    building_name: Mapped[str] = mapped_column(String(255))
    canonical_address: Mapped[str] = mapped_column(String(255))
    street_number: Mapped[str] = mapped_column(String(20))
    street_name: Mapped[str] = mapped_column(String(160))
    city_district: Mapped[str | None] = mapped_column(String(120), nullable=True)

    community_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    municipality_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    area_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    cover_photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    gallery_photos: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    sync_status: Mapped[str] = mapped_column(String(40), default="completed")
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class MlsListing(Base):
    __tablename__ = "mls_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_key: Mapped[str] = mapped_column(String(60), unique=True)

    street_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    street_name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    unit_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    standard_status: Mapped[str | None] = mapped_column(String(40), nullable=True)

    building_id: Mapped[int | None] = mapped_column(ForeignKey("buildings.id"), nullable=True, index=True)
    area_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    municipality_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    community_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Media(Base):
    __tablename__ = "media"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(ForeignKey("mls_listings.id"), index=True)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    variant_type: Mapped[str] = mapped_column(String(20), default="thumbnail")
    order_number: Mapped[int | None] = mapped_column(Integer, nullable=True)


class SyncHistory(Base):
    """
    Run ledger for discovery / assignment / nightly runs.
    """
    __tablename__ = "sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sync_type: Mapped[str] = mapped_column(String(40), index=True)
    status: Mapped[SyncRunStatus] = mapped_column(Enum(SyncRunStatus), default=SyncRunStatus.running, index=True)

    municipality_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(String(40), nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # {"discovery": {...}, "assignment": {...}, "baseline": {...}, "post_run": {...}}
    summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
