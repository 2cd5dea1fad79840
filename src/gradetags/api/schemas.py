"""
API schemas for gradetags.

Pydantic models for request/response validation.
"""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

# ===== Touch hook =====


class GradedEventRequest(BaseModel):
    """Submissions of these assignments just became graded."""

    owner_id: str = Field(min_length=1)
    assignment_ids: list[str] = Field(min_length=1)


class GradedEventResponse(BaseModel):
    accepted: bool = True
    touched: int


# ===== Sweep =====


class AggregateRequest(BaseModel):
    """Parameters of an administrative sweep."""

    owner_id: Optional[str] = None
    assignment_id: Optional[str] = None
    force: bool = False
    scope: Literal["due", "all"] = "due"
    layers: Literal["signals", "all"] = "signals"


class ItemOutcomeResponse(BaseModel):
    owner_id: str
    assignment_id: str
    ok: bool
    status: str
    sample_count: Optional[int] = None
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class OwnerOutcomeResponse(BaseModel):
    owner_id: str
    layer: str
    ok: bool
    status: Optional[str] = None
    domain: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class AggregateResponse(BaseModel):
    """Sweep summary: counts plus per-item and per-owner outcomes."""

    processed: int
    ok: int
    failed: int
    items: list[ItemOutcomeResponse] = Field(default_factory=list)
    merges: list[OwnerOutcomeResponse] = Field(default_factory=list)
    domains: list[OwnerOutcomeResponse] = Field(default_factory=list)
    abilities: list[OwnerOutcomeResponse] = Field(default_factory=list)


# ===== Manual override =====


class ManualTagIn(BaseModel):
    """One manually supplied tag. ``tag`` is accepted as an alias of ``label``."""

    label: Optional[str] = None
    tag: Optional[str] = None
    count: Any = None
    examples: Optional[list[Any]] = None


class ManualTagOut(BaseModel):
    label: str
    count: int
    examples: Optional[list[str]] = None


class OverrideRequest(BaseModel):
    owner_id: str
    assignment_id: str
    tags: list[ManualTagIn] = Field(default_factory=list)
    manual_locked: Optional[bool] = None  # Defaults to settings.manual_lock_default


class OverrideResponse(BaseModel):
    owner_id: str
    assignment_id: str
    status: str
    manual_locked: bool
    tags: list[ManualTagOut]
    new_labels: int
    domain: str
    domain_refreshed: bool


class UnlockRequest(BaseModel):
    owner_id: str = Field(min_length=1)
    assignment_id: str = Field(min_length=1)


# ===== Overview =====


class AssignmentStateResponse(BaseModel):
    owner_id: str
    assignment_id: str
    title: str = ""
    domain: str
    status: str
    sample_count: int = 0
    dirty: bool = False
    manual_locked: bool = False
    window_started_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_generated_at: Optional[datetime] = None
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    error_message: Optional[str] = None


class DictionaryEntryResponse(BaseModel):
    id: UUID
    owner_id: str
    label: str
    normalized_label: str
    status: str
    merged_to_tag_id: Optional[UUID] = None
    merged_to_label: Optional[str] = None
    usage_count: int = 0  # Distinct assignments, merged labels folded in
    total_count: int = 0


class AggregateTagResponse(BaseModel):
    label: str
    count: int
    examples: Optional[list[str]] = None
    source: Literal["ai", "manual"]
    generated_at: datetime


class TagOverviewResponse(BaseModel):
    owner_id: str
    dictionary: list[DictionaryEntryResponse]
    assignments: list[AssignmentStateResponse]
    aggregates: dict[str, list[AggregateTagResponse]]


class DictionaryEntryUpdate(BaseModel):
    """
    Dictionary curation.

    Sending ``merged_to_tag_id: null`` explicitly clears the merge pointer
    and reactivates the entry.
    """

    owner_id: str
    label: Optional[str] = None
    status: Optional[Literal["active", "merged"]] = None
    merged_to_tag_id: Optional[UUID] = None


# ===== Rollups =====


class DomainAggregateResponse(BaseModel):
    domain: str
    tag_label: str
    tag_count: int
    assignment_count: int
    sample_count: int
    generated_at: datetime


class AbilityAggregateResponse(BaseModel):
    ability_id: UUID
    label: str
    total_count: float
    assignment_count: int
    domain_count: int
    generated_at: datetime


class AbilityMappingResponse(BaseModel):
    tag_id: UUID
    tag_label: str
    ability_id: UUID
    ability_label: str
    confidence: Optional[float] = None
    source: Literal["ai", "manual"]


class AbilityOverviewResponse(BaseModel):
    owner_id: str
    abilities: list[AbilityAggregateResponse]
    mappings: list[AbilityMappingResponse]


class AbilityMappingRequest(BaseModel):
    """Pin a tag to an ability, referenced by id or by label."""

    owner_id: str
    tag_id: UUID
    ability_id: Optional[UUID] = None
    ability_label: Optional[str] = None
