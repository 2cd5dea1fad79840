"""
Dictionary merge job: canonicalize near-duplicate tag labels for one owner.

The model proposes groups of duplicates, each with a canonical label drawn
from the existing labels. Members are marked ``merged`` with a pointer to
the canonical entry. Merge pointers never chain: a label chosen as a
canonical is never merged in the same run, and entries that pointed at a
newly merged label are re-pointed at its canonical.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AssignmentTagAggregateRepository,
    TagDictionaryRepository,
)
from gradetags.models.db import DictionaryStatus, TagDictionaryEntry
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.generation import request_reply
from gradetags.taxonomy.normalize import clean_label, normalize_tag_label
from gradetags.taxonomy.prompts import build_merge_prompt
from gradetags.taxonomy.providers.base import LLMProvider
from gradetags.taxonomy.schemas import DictionaryMergeReply, MergeGroupEntry, parse_entries
from gradetags.taxonomy.signals import JobResult, Layer, LayerSignal
from gradetags.taxonomy.usage import CanonicalIndex, collect_usage, rank_by_usage
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class MergeGroup:
    canonical: str
    members: List[str]


def normalize_groups(entries: List[MergeGroupEntry]) -> List[MergeGroup]:
    """
    Clean raw groups.

    The canonical label is prepended to the members when missing; groups
    with fewer than two distinct members are dropped.
    """
    groups: List[MergeGroup] = []
    for entry in entries:
        canonical = clean_label(entry.canonical)
        raw_members = entry.members if isinstance(entry.members, list) else []
        members = [label for label in (clean_label(item) for item in raw_members) if label]
        if not canonical or not members:
            continue

        canonical_key = normalize_tag_label(canonical)
        if canonical_key not in {normalize_tag_label(member) for member in members}:
            members.insert(0, canonical)

        unique: Dict[str, str] = {}
        for member in members:
            unique.setdefault(normalize_tag_label(member), member)
        if len(unique) < 2:
            continue
        groups.append(MergeGroup(canonical=canonical, members=list(unique.values())))
    return groups


class DictionaryMergeJob:
    """Merge near-duplicate dictionary labels of one owner."""

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
        self.aggregates = AssignmentTagAggregateRepository(session)

    def run(self, owner_id: str) -> JobResult:
        """
        Run one merge pass.

        Returns:
            JobResult with status ``merged`` (owner-wide DOMAIN and ABILITY
            signals, even for a no-op merge) or ``skipped`` when the active
            label count is out of bounds
        """
        scope = f"owner={owner_id}"
        active = self.dictionary.list_active(owner_id)
        label_count = len(active)
        logger.info(f"[merge] start {scope} labels={label_count}")

        if label_count < self.config.merge_min_labels:
            logger.info(f"[merge] skipped {scope} reason=insufficient_labels")
            return JobResult(
                status="skipped",
                skipped="insufficient_labels",
                details={"label_count": label_count},
            )
        if label_count > self.config.merge_max_labels:
            logger.info(f"[merge] skipped {scope} reason=too_many_labels")
            return JobResult(
                status="skipped",
                skipped="too_many_labels",
                details={"label_count": label_count},
            )

        index = CanonicalIndex(self.dictionary.list_by_owner(owner_id))
        usage = collect_usage(self.aggregates.list_for_owner(owner_id), index)
        ranked = rank_by_usage(active, usage)
        prompt = build_merge_prompt(
            (entry.label, total, assignments) for entry, total, assignments in ranked
        )
        reply, response = request_reply(
            self.provider,
            self.config,
            prompt,
            DictionaryMergeReply,
            job="merge",
            scope=scope,
        )
        groups = normalize_groups(parse_entries(reply.groups, MergeGroupEntry))

        merged_count, canonical_count = self._apply_groups(owner_id, groups, active)
        logger.info(
            f"[merge] done {scope} groups={len(groups)} merged={merged_count} "
            f"canonical={canonical_count}"
        )
        return JobResult(
            status="merged",
            details={
                "label_count": label_count,
                "groups": len(groups),
                "merged_count": merged_count,
                "canonical_count": canonical_count,
                "model": response.model or self.provider.model_name,
            },
            signals=[
                LayerSignal(Layer.DOMAIN, owner_id),
                LayerSignal(Layer.ABILITY, owner_id),
            ],
        )

    def _apply_groups(
        self,
        owner_id: str,
        groups: List[MergeGroup],
        active: List[TagDictionaryEntry],
    ) -> tuple[int, int]:
        """
        Apply merge groups to the dictionary.

        Returns:
            Tuple of (entries merged, canonical entries touched)
        """
        if not groups:
            return 0, 0

        by_normalized: Dict[str, TagDictionaryEntry] = {
            entry.normalized_label: entry for entry in active
        }
        canonical_keys = {normalize_tag_label(group.canonical) for group in groups}
        canonical_ids = set()
        merged_ids = set()

        for group in groups:
            canonical_key = normalize_tag_label(group.canonical)
            canonical = self._resolve_canonical(owner_id, group.canonical, by_normalized)
            canonical_ids.add(canonical.id)

            for member in group.members:
                member_key = normalize_tag_label(member)
                if member_key == canonical_key or member_key in canonical_keys:
                    continue
                entry = by_normalized.get(member_key)
                if entry is None or entry.id in merged_ids or entry.id in canonical_ids:
                    continue
                merged_ids.add(entry.id)
                entry.status = DictionaryStatus.MERGED.value
                entry.merged_to_tag_id = canonical.id
                for follower in self.dictionary.list_pointing_to(owner_id, entry.id):
                    follower.merged_to_tag_id = canonical.id

        self.session.flush()
        return len(merged_ids), len(canonical_ids)

    def _resolve_canonical(
        self,
        owner_id: str,
        label: str,
        by_normalized: Dict[str, TagDictionaryEntry],
    ) -> TagDictionaryEntry:
        """Find or create the canonical entry and reset it to active/unmerged."""
        normalized = normalize_tag_label(label)
        entry = by_normalized.get(normalized)
        if entry is None:
            entry = self.dictionary.find_by_normalized(owner_id, normalized)
        if entry is None:
            entry = self.dictionary.create(
                owner_id=owner_id,
                label=label,
                normalized_label=normalized,
            )
        entry.status = DictionaryStatus.ACTIVE.value
        entry.merged_to_tag_id = None
        self.session.flush()
        by_normalized[normalized] = entry
        return entry
