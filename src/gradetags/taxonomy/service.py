"""
Taxonomy service: the operations exposed to the grading-sync path and to
administrators (touch hook, manual override, unlock, overview, dictionary
curation and manual ability pins).

Each operation runs in the caller's session and commits its own work.
"""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AbilityAggregateRepository,
    AbilityDictionaryRepository,
    AssignmentRepository,
    AssignmentTagAggregateRepository,
    AssignmentTagStateRepository,
    DomainTagAggregateRepository,
    MergeStateRepository,
    TagAbilityMappingRepository,
    TagDictionaryRepository,
)
from gradetags.db.repositories.submission import UNCATEGORIZED_DOMAIN
from gradetags.exceptions import InvalidRequestError, NotFoundError
from gradetags.models.db import (
    AssignmentTagState,
    DictionaryStatus,
    MappingSource,
    TagDictionaryEntry,
)
from gradetags.taxonomy.ability import AbilityRollup
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.domain_rollup import DomainRollup
from gradetags.taxonomy.normalize import (
    clean_examples,
    clean_label,
    normalize_ability_label,
    normalize_tag_label,
    parse_count,
)
from gradetags.taxonomy.state_machine import (
    apply_manual_override,
    record_dictionary_change,
    record_grading_event,
)
from gradetags.taxonomy.usage import CanonicalIndex, collect_usage
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)

MANUAL_MODEL = "manual"


def _state_to_dict(state: AssignmentTagState, assignment=None) -> Dict[str, Any]:
    return {
        "owner_id": state.owner_id,
        "assignment_id": state.assignment_id,
        "title": assignment.title if assignment else "",
        "domain": (assignment.domain if assignment else None) or UNCATEGORIZED_DOMAIN,
        "status": state.status,
        "sample_count": state.sample_count or 0,
        "dirty": state.dirty,
        "manual_locked": state.manual_locked,
        "window_started_at": state.window_started_at,
        "last_event_at": state.last_event_at,
        "next_run_at": state.next_run_at,
        "last_generated_at": state.last_generated_at,
        "model": state.model,
        "prompt_version": state.prompt_version,
        "error_message": state.error_message,
    }


def _entry_to_dict(
    entry: TagDictionaryEntry, merged_to_label: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "owner_id": entry.owner_id,
        "label": entry.label,
        "normalized_label": entry.normalized_label,
        "status": entry.status,
        "merged_to_tag_id": entry.merged_to_tag_id,
        "merged_to_label": merged_to_label,
    }


class TaxonomyService:
    """Operations on one owner's taxonomy outside of the scheduled sweep."""

    def __init__(
        self,
        session: Session,
        config: Optional[PipelineConfig] = None,
        clock: Callable = utc_now,
    ):
        self.session = session
        self.config = config or PipelineConfig.from_settings()
        self.clock = clock
        self.states = AssignmentTagStateRepository(session)
        self.merge_states = MergeStateRepository(session)
        self.assignments = AssignmentRepository(session)
        self.dictionary = TagDictionaryRepository(session)
        self.aggregates = AssignmentTagAggregateRepository(session)
        self.domain_aggregates = DomainTagAggregateRepository(session)
        self.abilities = AbilityDictionaryRepository(session)
        self.mappings = TagAbilityMappingRepository(session)
        self.ability_aggregates = AbilityAggregateRepository(session)

    # ------------------------------------------------------------------
    # Touch hook
    # ------------------------------------------------------------------

    def record_graded(self, owner_id: str, assignment_ids: Iterable[str]) -> int:
        """
        Record that submissions of these assignments became graded.

        Never raises: grading must not fail because tagging could not be
        scheduled. Failures are logged and the touch is dropped.

        Returns:
            Number of assignment states touched (0 on failure)
        """
        ids = []
        for assignment_id in assignment_ids:
            assignment_id = (assignment_id or "").strip()
            if assignment_id and assignment_id not in ids:
                ids.append(assignment_id)

        try:
            now = self.clock()
            for assignment_id in ids:
                state = self.states.get_or_create(owner_id, assignment_id)
                record_grading_event(state, now, self.config)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.error(
                f"[touch] failed owner={owner_id} assignments={ids} error={e}",
                exc_info=True,
            )
            return 0

        logger.info(f"[touch] owner={owner_id} assignments={len(ids)}")
        return len(ids)

    # ------------------------------------------------------------------
    # Manual override / unlock
    # ------------------------------------------------------------------

    def apply_override(
        self,
        owner_id: str,
        assignment_id: str,
        tags: List[Dict[str, Any]],
        locked: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Replace an assignment's tags with a manually supplied set.

        Entries need a label (``label`` or ``tag``) and a positive count;
        invalid entries are dropped and at most two examples are kept.

        Raises:
            InvalidRequestError: Missing identifiers or no usable tag
        """
        owner_id = (owner_id or "").strip()
        assignment_id = (assignment_id or "").strip()
        if not owner_id or not assignment_id:
            raise InvalidRequestError("owner_id and assignment_id are required")

        cleaned = self._clean_manual_tags(tags)
        if not cleaned:
            raise InvalidRequestError("at least one tag with a label and a positive count is required")

        lock = self.config.manual_lock_default if locked is None else locked
        now = self.clock()

        index = self.dictionary.normalized_index(owner_id)
        new_labels = 0
        for tag in cleaned:
            normalized = normalize_tag_label(tag["label"])
            if normalized not in index:
                index[normalized] = self.dictionary.create(
                    owner_id=owner_id, label=tag["label"], normalized_label=normalized
                )
                new_labels += 1
        if new_labels:
            record_dictionary_change(self.merge_states.get_or_create(owner_id), now, self.config)

        self.aggregates.replace_for_assignment(
            owner_id,
            assignment_id,
            [
                {
                    "tag_label": tag["label"],
                    "tag_count": tag["count"],
                    "examples": tag["examples"],
                    "generated_at": now,
                    "model": MANUAL_MODEL,
                    "prompt_version": MANUAL_MODEL,
                }
                for tag in cleaned
            ],
        )

        state = self.states.get_or_create(owner_id, assignment_id)
        apply_manual_override(state, now, lock)
        self.session.commit()
        logger.info(
            f"[override] owner={owner_id} assignment={assignment_id} "
            f"tags={len(cleaned)} locked={lock}"
        )

        domain = self.assignments.domain_of(owner_id, assignment_id)
        domain_refreshed = True
        try:
            DomainRollup(self.session, self.clock).refresh_domain(owner_id, domain)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            domain_refreshed = False
            logger.error(
                f"[override] domain_rollup_failed owner={owner_id} domain={domain} error={e}"
            )

        return {
            "owner_id": owner_id,
            "assignment_id": assignment_id,
            "status": state.status,
            "manual_locked": state.manual_locked,
            "tags": cleaned,
            "new_labels": new_labels,
            "domain": domain,
            "domain_refreshed": domain_refreshed,
        }

    @staticmethod
    def _clean_manual_tags(tags: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        cleaned: List[Dict[str, Any]] = []
        seen = set()
        for tag in tags or []:
            if not isinstance(tag, dict):
                continue
            label = clean_label(tag.get("label")) or clean_label(tag.get("tag"))
            count = parse_count(tag.get("count"))
            if not label or count is None or count <= 0:
                continue
            normalized = normalize_tag_label(label)
            if normalized in seen:
                continue
            seen.add(normalized)
            cleaned.append(
                {"label": label, "count": count, "examples": clean_examples(tag.get("examples"))}
            )
        return cleaned

    def unlock(self, owner_id: str, assignment_id: str) -> Dict[str, Any]:
        """Clear ``manual_locked``; the status itself is left as is."""
        state = self.states.get_state(owner_id, assignment_id)
        if state is None:
            raise NotFoundError(f"No tag state for assignment {assignment_id}")
        state.manual_locked = False
        state.updated_at = self.clock()
        self.session.commit()
        logger.info(f"[unlock] owner={owner_id} assignment={assignment_id}")
        return _state_to_dict(state, self.assignments.get_for_owner(owner_id, assignment_id))

    # ------------------------------------------------------------------
    # Overview
    # ------------------------------------------------------------------

    def overview(self, owner_id: str, assignment_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Dictionary with usage, assignment states and aggregates per assignment.

        Usage folds merged labels into their canonical entry; merged entries
        report zero usage.
        """
        entries = self.dictionary.list_by_owner(owner_id)
        by_id = {entry.id: entry for entry in entries}
        index = CanonicalIndex(entries)
        usage = collect_usage(self.aggregates.list_for_owner(owner_id), index)

        dictionary = []
        for entry in entries:
            target = by_id.get(entry.merged_to_tag_id) if entry.merged_to_tag_id else None
            payload = _entry_to_dict(entry, target.label if target else None)
            stats = None if not entry.is_active else usage.get(entry.normalized_label)
            payload["usage_count"] = stats.assignment_count if stats else 0
            payload["total_count"] = stats.total if stats else 0
            dictionary.append(payload)

        states = self.states.list_for_owner(owner_id, assignment_id)
        assignment_rows = {
            assignment.id: assignment
            for assignment in (
                self.assignments.get_for_owner(owner_id, state.assignment_id)
                for state in states
            )
            if assignment is not None
        }

        aggregates: Dict[str, List[Dict[str, Any]]] = {}
        for row in self.aggregates.list_for_owner(owner_id, assignment_id):
            aggregates.setdefault(row.assignment_id, []).append(
                {
                    "label": row.tag_label,
                    "count": row.tag_count,
                    "examples": row.examples,
                    "source": (
                        MappingSource.MANUAL.value
                        if row.model == MANUAL_MODEL
                        else MappingSource.AI.value
                    ),
                    "generated_at": row.generated_at,
                }
            )

        return {
            "owner_id": owner_id,
            "dictionary": dictionary,
            "assignments": [
                _state_to_dict(state, assignment_rows.get(state.assignment_id))
                for state in states
            ],
            "aggregates": aggregates,
        }

    def domain_rollups(self, owner_id: str, domain: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            {
                "domain": row.domain,
                "tag_label": row.tag_label,
                "tag_count": row.tag_count,
                "assignment_count": row.assignment_count,
                "sample_count": row.sample_count,
                "generated_at": row.generated_at,
            }
            for row in self.domain_aggregates.list_for_owner(owner_id, domain)
        ]

    def ability_rollups(self, owner_id: str) -> Dict[str, Any]:
        """Ability aggregates plus the tag to ability mappings behind them."""
        abilities = {ability.id: ability for ability in self.abilities.list_active(owner_id)}
        tags = {entry.id: entry for entry in self.dictionary.list_by_owner(owner_id)}
        aggregates = [
            {
                "ability_id": row.ability_id,
                "label": abilities[row.ability_id].label if row.ability_id in abilities else "",
                "total_count": row.total_count,
                "assignment_count": row.assignment_count,
                "domain_count": row.domain_count,
                "generated_at": row.generated_at,
            }
            for row in self.ability_aggregates.list_for_owner(owner_id)
        ]
        mappings = [
            {
                "tag_id": mapping.tag_id,
                "tag_label": tags[mapping.tag_id].label if mapping.tag_id in tags else "",
                "ability_id": mapping.ability_id,
                "ability_label": (
                    abilities[mapping.ability_id].label
                    if mapping.ability_id in abilities
                    else ""
                ),
                "confidence": mapping.confidence,
                "source": mapping.source,
            }
            for mapping in self.mappings.list_for_owner(owner_id)
        ]
        return {"owner_id": owner_id, "abilities": aggregates, "mappings": mappings}

    # ------------------------------------------------------------------
    # Dictionary curation
    # ------------------------------------------------------------------

    def update_dictionary_entry(
        self,
        owner_id: str,
        tag_id: uuid.UUID,
        label: Optional[str] = None,
        status: Optional[str] = None,
        merged_to_tag_id: Optional[uuid.UUID] = None,
        clear_merge: bool = False,
    ) -> Dict[str, Any]:
        """
        Rename an entry, change its status or move its merge pointer.

        Active normalized labels stay unique, merge pointers only target
        other active entries, and entries that pointed at a newly merged
        entry are re-pointed to its target.

        Raises:
            NotFoundError: Unknown entry or merge target
            InvalidRequestError: The change would break a dictionary invariant
        """
        entry = self.dictionary.get_for_owner(owner_id, tag_id)
        if entry is None:
            raise NotFoundError(f"Tag {tag_id} not found")

        valid_statuses = {DictionaryStatus.ACTIVE.value, DictionaryStatus.MERGED.value}
        if status is not None and status not in valid_statuses:
            raise InvalidRequestError(f"Invalid status: {status}")
        if merged_to_tag_id is not None and clear_merge:
            raise InvalidRequestError("merged_to_tag_id cannot be set and cleared at once")

        new_label = entry.label
        if label is not None:
            new_label = clean_label(label)
            if not new_label:
                raise InvalidRequestError("label must not be empty")
        normalized = normalize_tag_label(new_label)

        target: Optional[TagDictionaryEntry] = None
        if merged_to_tag_id is not None:
            if status == DictionaryStatus.ACTIVE.value:
                raise InvalidRequestError("an active entry cannot have a merge target")
            target = self.dictionary.get_for_owner(owner_id, merged_to_tag_id)
            if target is None:
                raise NotFoundError(f"Tag {merged_to_tag_id} not found")
            if target.id == entry.id:
                raise InvalidRequestError("a tag cannot be merged into itself")
            if not target.is_active:
                raise InvalidRequestError("merge target must be an active tag")
            new_status = DictionaryStatus.MERGED.value
        elif clear_merge or status == DictionaryStatus.ACTIVE.value:
            if status == DictionaryStatus.MERGED.value:
                raise InvalidRequestError("a merged entry needs a merge target")
            new_status = DictionaryStatus.ACTIVE.value
        elif status == DictionaryStatus.MERGED.value:
            if entry.merged_to_tag_id is None:
                raise InvalidRequestError("a merged entry needs a merge target")
            new_status = DictionaryStatus.MERGED.value
        else:
            new_status = entry.status

        if new_status == DictionaryStatus.ACTIVE.value:
            clash = self.dictionary.find_by_normalized(owner_id, normalized, active_only=True)
            if clash is not None and clash.id != entry.id:
                raise InvalidRequestError(f"An active tag already uses the label {clash.label!r}")

        entry.label = new_label
        entry.normalized_label = normalized
        if new_status == DictionaryStatus.ACTIVE.value:
            entry.status = new_status
            entry.merged_to_tag_id = None
        elif target is not None:
            entry.status = new_status
            entry.merged_to_tag_id = target.id
            for follower in self.dictionary.list_pointing_to(owner_id, entry.id):
                follower.merged_to_tag_id = target.id
        self.session.flush()
        self.session.commit()

        merged_to = (
            self.dictionary.get_for_owner(owner_id, entry.merged_to_tag_id)
            if entry.merged_to_tag_id
            else None
        )
        logger.info(
            f"[dictionary] updated owner={owner_id} tag={entry.id} status={entry.status}"
        )
        return _entry_to_dict(entry, merged_to.label if merged_to else None)

    # ------------------------------------------------------------------
    # Manual ability pins
    # ------------------------------------------------------------------

    def set_manual_mapping(
        self,
        owner_id: str,
        tag_id: uuid.UUID,
        ability_label: Optional[str] = None,
        ability_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """
        Pin a tag to an ability category and refresh the ability rollup.

        The ability is referenced by id, or by label (created when absent).
        """
        tag = self.dictionary.get_for_owner(owner_id, tag_id)
        if tag is None:
            raise NotFoundError(f"Tag {tag_id} not found")
        if not tag.is_active:
            raise InvalidRequestError("only active tags can be mapped")

        if ability_id is not None:
            ability = self.abilities.get_for_owner(owner_id, ability_id)
            if ability is None:
                raise NotFoundError(f"Ability {ability_id} not found")
        else:
            label = clean_label(ability_label)
            if not label:
                raise InvalidRequestError("ability_id or ability_label is required")
            normalized = normalize_ability_label(label)
            ability = self.abilities.normalized_index(owner_id).get(normalized)
            if ability is None:
                ability = self.abilities.create(
                    owner_id=owner_id, label=label, normalized_label=normalized
                )

        mapping = self.mappings.pin_manual(owner_id, tag.id, ability.id)
        AbilityRollup(self.session, self.config, self.clock).refresh(owner_id)
        self.session.commit()
        logger.info(
            f"[ability] manual_pin owner={owner_id} tag={tag.label!r} ability={ability.label!r}"
        )
        return {
            "tag_id": tag.id,
            "tag_label": tag.label,
            "ability_id": ability.id,
            "ability_label": ability.label,
            "confidence": mapping.confidence,
            "source": mapping.source,
        }
