from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Literal

from .models import CandidateStatus, NameSource


# -----------------------------
# Progress events (assignment stream)
# -----------------------------
class ProgressCounts(BaseModel):
    current: int = Field(0, ge=0)
    total: int = Field(0, ge=0)
    completed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    candidate_id: int
    name: str | None = None
    status: str
    building_id: int | None = None
    linked_listings: int | None = None
    error: str | None = None
    progress: ProgressCounts


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    progress: ProgressCounts


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


# -----------------------------
# Admin API
# -----------------------------
class DiscoverRequest(BaseModel):
    municipality_id: int
    community_id: int | None = None
    allow_count_decrease: bool = False


class AssignRequest(BaseModel):
    building_ids: list[int] = Field(..., min_length=1)
    batch_size: int | None = Field(None, ge=1, le=50)


class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    street_number: str
    street_key: str
    street_name: str
    street_suffix: str | None = None
    street_dir_suffix: str | None = None
    city: str | None = None

    building_name: str | None = None
    building_name_original: str | None = None
    name_source: NameSource | None = None
    name_uncertain: bool = False

    area_id: int | None = None
    municipality_id: int
    community_id: int | None = None
    feed_community: str | None = None

    listing_count: int = 0
    status: CandidateStatus
    failed_reason: str | None = None
    retry_count: int = 0
    building_id: int | None = None

    discovered_at: datetime | None = None
    synced_at: datetime | None = None


class HierarchyCountsOut(BaseModel):
    scope: str
    id: int
    buildings_discovered: int
    buildings_synced: int
    discovery_status: str
    applied: bool


class DiscoverResult(BaseModel):
    municipality_id: int
    community_id: int | None = None
    summary: dict[str, Any]
    counts: list[HierarchyCountsOut]
    buildings: list[CandidateOut]


class NightlyResult(BaseModel):
    status: str
    exit_code: int
    run_id: int | None = None
    summary: dict[str, Any]
