"""
Ability mapping job and ability rollup.

The mapping job asks the model to classify the owner's most used tags into
coarse ability categories and replaces the model-generated mappings; manual
pins are kept. The rollup then weighs every assignment tag count by the
confidence of its tag's mapping.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AbilityAggregateRepository,
    AbilityDictionaryRepository,
    AssignmentRepository,
    AssignmentTagAggregateRepository,
    TagAbilityMappingRepository,
    TagDictionaryRepository,
)
from gradetags.db.repositories.submission import UNCATEGORIZED_DOMAIN
from gradetags.models.db import AbilityDictionaryEntry, MappingSource, TagAbilityMapping
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.generation import request_reply
from gradetags.taxonomy.normalize import (
    clean_label,
    normalize_ability_label,
    normalize_tag_label,
    parse_confidence,
)
from gradetags.taxonomy.prompts import build_ability_prompt
from gradetags.taxonomy.providers.base import LLMProvider
from gradetags.taxonomy.schemas import (
    AbilityEntry,
    AbilityMappingEntry,
    AbilityMappingReply,
    parse_entries,
)
from gradetags.taxonomy.signals import JobResult
from gradetags.taxonomy.usage import CanonicalIndex, collect_usage, rank_by_usage
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class _AbilityStats:
    total: float = 0.0
    assignments: Set[str] = field(default_factory=set)
    domains: Set[str] = field(default_factory=set)


class AbilityRollup:
    """Recompute confidence-weighted ability totals for an owner."""

    def __init__(
        self,
        session: Session,
        config: PipelineConfig,
        clock: Callable = utc_now,
    ):
        self.session = session
        self.config = config
        self.clock = clock
        self.assignments = AssignmentRepository(session)
        self.dictionary = TagDictionaryRepository(session)
        self.mappings = TagAbilityMappingRepository(session)
        self.assignment_aggregates = AssignmentTagAggregateRepository(session)
        self.ability_aggregates = AbilityAggregateRepository(session)

    def refresh(self, owner_id: str, model: Optional[str] = None) -> int:
        """
        Replace the owner's ability aggregates.

        Each (assignment, tag) row adds ``tag_count * confidence`` to its
        tag's ability, with a missing confidence counting as 1. Unmapped
        tags are skipped.

        Returns:
            Number of ability aggregate rows written
        """
        entries = self.dictionary.list_by_owner(owner_id)
        index = CanonicalIndex(entries)
        key_by_tag_id = {entry.id: index.canonical_key(entry.label) for entry in entries}
        active_ids = {entry.id for entry in entries if entry.is_active}

        def precedence(mapping: TagAbilityMapping) -> tuple[bool, bool]:
            # Manual pins first, then the canonical entry's own mapping
            return (
                mapping.source != MappingSource.MANUAL.value,
                mapping.tag_id not in active_ids,
            )

        mapping_by_key: Dict[str, TagAbilityMapping] = {}
        for mapping in sorted(self.mappings.list_for_owner(owner_id), key=precedence):
            key = key_by_tag_id.get(mapping.tag_id)
            if key is not None:
                mapping_by_key.setdefault(key, mapping)

        rows = self.assignment_aggregates.list_for_owner(owner_id)
        domains = self.assignments.domains_by_assignment(
            owner_id, {row.assignment_id for row in rows}
        )

        stats: Dict[object, _AbilityStats] = {}
        for row in rows:
            mapping = mapping_by_key.get(index.canonical_key(row.tag_label))
            if mapping is None:
                continue
            weight = mapping.confidence if mapping.confidence is not None else 1.0
            bucket = stats.setdefault(mapping.ability_id, _AbilityStats())
            bucket.total += (row.tag_count or 0) * weight
            bucket.assignments.add(row.assignment_id)
            bucket.domains.add(domains.get(row.assignment_id, UNCATEGORIZED_DOMAIN))

        now = self.clock()
        self.ability_aggregates.replace_for_owner(
            owner_id,
            [
                {
                    "ability_id": ability_id,
                    "total_count": round(bucket.total, 4),
                    "assignment_count": len(bucket.assignments),
                    "domain_count": len(bucket.domains),
                    "generated_at": now,
                    "model": model,
                    "prompt_version": self.config.ability_prompt_version,
                }
                for ability_id, bucket in stats.items()
            ],
        )
        logger.info(f"[ability] rollup owner={owner_id} abilities={len(stats)}")
        return len(stats)


class AbilityMappingJob:
    """Classify an owner's tags into ability categories."""

    def __init__(
        self,
        session: Session,
        provider: Optional[LLMProvider],
        config: PipelineConfig,
        clock: Callable = utc_now,
    ):
        self.session = session
        self.provider = provider
        self.config = config
        self.clock = clock
        self.dictionary = TagDictionaryRepository(session)
        self.abilities = AbilityDictionaryRepository(session)
        self.mappings = TagAbilityMappingRepository(session)
        self.assignment_aggregates = AssignmentTagAggregateRepository(session)
        self.rollup = AbilityRollup(session, config, clock)

    def run(self, owner_id: str) -> JobResult:
        """
        Remap the owner's tags and refresh the ability rollup.

        Returns:
            JobResult with status ``mapped``, or ``skipped`` when the owner
            has fewer active tags than the configured minimum
        """
        scope = f"owner={owner_id}"
        active = self.dictionary.list_active(owner_id)
        logger.info(f"[ability] start {scope} tags={len(active)}")
        if len(active) < self.config.ability_min_tags:
            logger.info(f"[ability] skipped {scope} reason=insufficient_tags")
            return JobResult(
                status="skipped",
                skipped="insufficient_tags",
                details={"tag_count": len(active)},
            )

        index = CanonicalIndex(self.dictionary.list_by_owner(owner_id))
        usage = collect_usage(self.assignment_aggregates.list_for_owner(owner_id), index)
        ranked = rank_by_usage(active, usage)[: self.config.ability_tag_limit]

        existing = self.abilities.list_active(owner_id)
        prompt = build_ability_prompt(
            [(entry.label, total, assignments) for entry, total, assignments in ranked],
            [ability.label for ability in existing],
            language=self.config.tag_language,
        )
        reply, response = request_reply(
            self.provider,
            self.config,
            prompt,
            AbilityMappingReply,
            job="ability",
            scope=scope,
        )
        entries = parse_entries(reply.mappings, AbilityMappingEntry)

        ability_labels: List[str] = [
            label
            for label in (clean_label(item.label) for item in parse_entries(reply.abilities, AbilityEntry))
            if label
        ]
        ability_labels.extend(
            label for label in (clean_label(item.ability) for item in entries) if label
        )
        ability_index = self._ensure_abilities(owner_id, ability_labels)

        pinned = {
            mapping.tag_id
            for mapping in self.mappings.list_for_owner(owner_id, MappingSource.MANUAL.value)
        }
        tag_by_key = {entry.normalized_label: entry for entry, _, _ in ranked}
        rows = []
        mapped_tags = set()
        for item in entries:
            tag_label = clean_label(item.tag)
            ability_label = clean_label(item.ability)
            if not tag_label or not ability_label:
                continue
            tag = tag_by_key.get(normalize_tag_label(tag_label))
            ability = ability_index.get(normalize_ability_label(ability_label))
            if tag is None or ability is None:
                continue
            if tag.id in pinned or tag.id in mapped_tags:
                continue
            mapped_tags.add(tag.id)
            rows.append(
                {
                    "tag_id": tag.id,
                    "ability_id": ability.id,
                    "confidence": parse_confidence(item.confidence),
                }
            )

        self.mappings.replace_ai_mappings(owner_id, rows)
        model = response.model or self.provider.model_name
        aggregate_count = self.rollup.refresh(owner_id, model=model)
        logger.info(
            f"[ability] done {scope} mapped={len(rows)} abilities={len(set(ability_labels))}"
        )
        return JobResult(
            status="mapped",
            details={
                "mapped": len(rows),
                "abilities": len({normalize_ability_label(label) for label in ability_labels}),
                "aggregates": aggregate_count,
                "model": model,
            },
        )

    def _ensure_abilities(
        self, owner_id: str, labels: List[str]
    ) -> Dict[str, AbilityDictionaryEntry]:
        """Create ability categories that do not exist yet (by normalized label)."""
        index = self.abilities.normalized_index(owner_id)
        for label in labels:
            normalized = normalize_ability_label(label)
            if not normalized or normalized in index:
                continue
            index[normalized] = self.abilities.create(
                owner_id=owner_id,
                label=label,
                normalized_label=normalized,
            )
        return index
