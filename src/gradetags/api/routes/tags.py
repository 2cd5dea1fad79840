"""
Tag taxonomy API routes.

Endpoints for the administrative sweep, manual overrides, dictionary
curation and the domain/ability rollups.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from gradetags.api.deps import get_pipeline_config, get_provider
from gradetags.api.schemas import (
    AbilityMappingRequest,
    AbilityMappingResponse,
    AbilityOverviewResponse,
    AggregateRequest,
    AggregateResponse,
    AssignmentStateResponse,
    DictionaryEntryResponse,
    DictionaryEntryUpdate,
    DomainAggregateResponse,
    OverrideRequest,
    OverrideResponse,
    TagOverviewResponse,
    UnlockRequest,
)
from gradetags.db.connection import get_db
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.orchestrator import PipelineOrchestrator, SweepRequest
from gradetags.taxonomy.providers import LLMProvider
from gradetags.taxonomy.service import TaxonomyService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/aggregate", response_model=AggregateResponse)
def aggregate_tags(
    body: AggregateRequest,
    session: Session = Depends(get_db),
    provider: Optional[LLMProvider] = Depends(get_provider),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> AggregateResponse:
    """
    Run a sweep over due assignment states and cascade to dependent layers.

    Per-item failures are reported in the summary; the request itself only
    fails on errors outside the per-item boundary.
    """
    orchestrator = PipelineOrchestrator(session, provider, config)
    report = orchestrator.sweep(SweepRequest(**body.model_dump()))
    return AggregateResponse(**report.to_dict())


@router.post("/override", response_model=OverrideResponse)
def override_tags(
    body: OverrideRequest,
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> OverrideResponse:
    """
    Replace an assignment's tags with a manual set.

    Raises:
        400: Missing identifiers or no usable tag
    """
    result = TaxonomyService(session, config).apply_override(
        body.owner_id,
        body.assignment_id,
        [tag.model_dump() for tag in body.tags],
        locked=body.manual_locked,
    )
    return OverrideResponse(**result)


@router.post("/unlock", response_model=AssignmentStateResponse)
def unlock_assignment(
    body: UnlockRequest,
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> AssignmentStateResponse:
    """
    Re-admit a manually locked assignment to scheduling.

    Raises:
        404: No tag state for the assignment
    """
    state = TaxonomyService(session, config).unlock(body.owner_id, body.assignment_id)
    return AssignmentStateResponse(**state)


@router.get("", response_model=TagOverviewResponse)
def tag_overview(
    owner_id: str = Query(..., min_length=1),
    assignment_id: Optional[str] = Query(None),
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> TagOverviewResponse:
    """Dictionary with usage, assignment states and per-assignment aggregates."""
    overview = TaxonomyService(session, config).overview(owner_id, assignment_id)
    return TagOverviewResponse(**overview)


@router.patch("/dictionary/{tag_id}", response_model=DictionaryEntryResponse)
def update_dictionary_entry(
    tag_id: UUID,
    body: DictionaryEntryUpdate,
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> DictionaryEntryResponse:
    """
    Rename an entry, change its status or move its merge pointer.

    Raises:
        400: The change would break a dictionary invariant
        404: Entry or merge target not found
    """
    clear_merge = "merged_to_tag_id" in body.model_fields_set and body.merged_to_tag_id is None
    entry = TaxonomyService(session, config).update_dictionary_entry(
        body.owner_id,
        tag_id,
        label=body.label,
        status=body.status,
        merged_to_tag_id=body.merged_to_tag_id,
        clear_merge=clear_merge,
    )
    return DictionaryEntryResponse(**entry)


@router.get("/domains", response_model=list[DomainAggregateResponse])
def domain_rollups(
    owner_id: str = Query(..., min_length=1),
    domain: Optional[str] = Query(None),
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> list[DomainAggregateResponse]:
    rows = TaxonomyService(session, config).domain_rollups(owner_id, domain)
    return [DomainAggregateResponse(**row) for row in rows]


@router.get("/abilities", response_model=AbilityOverviewResponse)
def ability_rollups(
    owner_id: str = Query(..., min_length=1),
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> AbilityOverviewResponse:
    return AbilityOverviewResponse(**TaxonomyService(session, config).ability_rollups(owner_id))


@router.put("/abilities/mapping", response_model=AbilityMappingResponse)
def pin_ability_mapping(
    body: AbilityMappingRequest,
    session: Session = Depends(get_db),
    config: PipelineConfig = Depends(get_pipeline_config),
) -> AbilityMappingResponse:
    """
    Pin a tag to an ability category; manual pins survive AI re-mapping.

    Raises:
        400: Inactive tag or no ability reference
        404: Tag or ability not found
    """
    mapping = TaxonomyService(session, config).set_manual_mapping(
        body.owner_id,
        body.tag_id,
        ability_label=body.ability_label,
        ability_id=body.ability_id,
    )
    return AbilityMappingResponse(**mapping)
