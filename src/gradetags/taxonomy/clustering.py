"""
Clustering job: graded submissions of one assignment to ranked tags.

The orchestrator claims the state row (status ``running``) before calling
``ClusteringJob.run`` and commits afterwards, so the aggregate replace-set
and the state finalization land in one transaction.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AssignmentRepository,
    AssignmentTagAggregateRepository,
    AssignmentTagStateRepository,
    SubmissionRepository,
    TagDictionaryRepository,
)
from gradetags.exceptions import ModelOutputError
from gradetags.models.db import AssignmentTagState, AssignmentTagStatus, TagDictionaryEntry
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.generation import request_reply
from gradetags.taxonomy.issues import build_issue_stats
from gradetags.taxonomy.normalize import (
    clean_examples,
    clean_label,
    normalize_tag_label,
    parse_count,
)
from gradetags.taxonomy.prompts import build_tag_prompt
from gradetags.taxonomy.providers.base import LLMProvider
from gradetags.taxonomy.schemas import TagClusteringReply, TagEntry, parse_entries
from gradetags.taxonomy.signals import JobResult, Layer, LayerSignal
from gradetags.taxonomy.state_machine import finish_run
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ClusteredTag:
    label: str
    count: int
    examples: Optional[List[str]] = None


def normalize_tags(
    entries: List[TagEntry], sample_count: int, limit: int
) -> List[ClusteredTag]:
    """
    Turn raw tag entries into at most ``limit`` usable tags.

    Entries need a label (``label`` or ``tag``) and a positive count. Counts
    are clamped to ``sample_count``; labels that fold to the same identity
    keep only their highest-count entry.
    """
    tags: List[ClusteredTag] = []
    for entry in entries:
        label = clean_label(entry.label) or clean_label(entry.tag)
        count = parse_count(entry.count)
        if not label or count is None or count <= 0:
            continue
        tags.append(
            ClusteredTag(
                label=label,
                count=min(count, sample_count),
                examples=clean_examples(entry.examples),
            )
        )

    tags.sort(key=lambda tag: tag.count, reverse=True)

    unique: List[ClusteredTag] = []
    seen: set[str] = set()
    for tag in tags:
        key = normalize_tag_label(tag.label)
        if key in seen:
            continue
        seen.add(key)
        unique.append(tag)
    return unique[:limit]


class ClusteringJob:
    """Cluster one assignment's issues into tags via the text-generation provider."""

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
        self.states = AssignmentTagStateRepository(session)
        self.assignments = AssignmentRepository(session)
        self.submissions = SubmissionRepository(session)
        self.dictionary = TagDictionaryRepository(session)
        self.aggregates = AssignmentTagAggregateRepository(session)

    def run(self, owner_id: str, assignment_id: str) -> JobResult:
        """
        Recompute the tag aggregate of one assignment.

        Returns:
            JobResult with status ready, insufficient_samples or locked (or
            pending when events arrived during the run, superseded when the
            row left ``running`` under it) and the layers made stale

        Raises:
            ModelOutputError: Unusable model output
            TextGenerationError: Provider failure or timeout
        """
        started = time.time()
        now = self.clock()
        scope = f"owner={owner_id} assignment={assignment_id}"
        logger.info(f"[clustering] start {scope}")

        state = self.states.get_state(owner_id, assignment_id, refresh=True)
        if state is None:
            state = self.states.get_or_create(owner_id, assignment_id)

        if state.manual_locked:
            state.status = AssignmentTagStatus.READY.value
            state.updated_at = now
            logger.info(f"[clustering] manual_locked_skip {scope}")
            return JobResult(status="locked", sample_count=state.sample_count or 0)

        domain = self.assignments.domain_of(owner_id, assignment_id)
        domain_signal = LayerSignal(Layer.DOMAIN, owner_id, domain)

        submissions = self.submissions.list_graded(owner_id, assignment_id)
        sample_count = len(submissions)
        logger.info(f"[clustering] samples {scope} graded={sample_count}")

        if sample_count < self.config.tag_min_sample_count:
            logger.info(
                f"[clustering] insufficient_samples {scope} "
                f"graded={sample_count} required={self.config.tag_min_sample_count}"
            )
            if not self._still_claimed(state, scope):
                return self._released(state)
            finish_run(
                state,
                now,
                self.config,
                status=AssignmentTagStatus.INSUFFICIENT_SAMPLES.value,
                sample_count=sample_count,
                model=None,
                prompt_version=None,
                generated=False,
            )
            return self._result(state.status, sample_count, started, scope)

        issue_stats = build_issue_stats(submissions, limit=self.config.tag_top_issues)
        logger.info(f"[clustering] issue_stats {scope} count={len(issue_stats)}")

        if not issue_stats:
            if not self._still_claimed(state, scope):
                return self._released(state)
            self.aggregates.replace_for_assignment(owner_id, assignment_id, [])
            finish_run(
                state,
                now,
                self.config,
                status=AssignmentTagStatus.READY.value,
                sample_count=sample_count,
                model=None,
                prompt_version=self.config.tag_prompt_version,
            )
            return self._result(
                state.status, sample_count, started, scope, signals=[domain_signal], tags=0
            )

        dictionary_labels = [entry.label for entry in self.dictionary.list_active(owner_id)]
        prompt = build_tag_prompt(
            issue_stats,
            dictionary_labels,
            language=self.config.tag_language,
            max_tags=self.config.tag_limit,
        )
        reply, response = request_reply(
            self.provider,
            self.config,
            prompt,
            TagClusteringReply,
            job="clustering",
            scope=scope,
        )

        # Events and overrides may have landed while the model was working
        if not self._still_claimed(state, scope):
            return self._released(state)

        tags = normalize_tags(
            parse_entries(reply.tags, TagEntry), sample_count, self.config.tag_limit
        )
        if not tags:
            raise ModelOutputError("model output contains no usable tags")
        logger.info(f"[clustering] tags_ready {scope} count={len(tags)}")

        labels, new_labels = self._register_labels(owner_id, tags)
        model = response.model or self.provider.model_name
        self.aggregates.replace_for_assignment(
            owner_id,
            assignment_id,
            [
                {
                    "tag_label": label,
                    "tag_count": tag.count,
                    "examples": tag.examples or None,
                    "generated_at": now,
                    "model": model,
                    "prompt_version": self.config.tag_prompt_version,
                }
                for label, tag in zip(labels, tags)
            ],
        )

        finish_run(
            state,
            now,
            self.config,
            status=AssignmentTagStatus.READY.value,
            sample_count=sample_count,
            model=model,
            prompt_version=self.config.tag_prompt_version,
        )

        signals = [domain_signal]
        if new_labels:
            signals.insert(0, LayerSignal(Layer.MERGE, owner_id))
        return self._result(
            state.status,
            sample_count,
            started,
            scope,
            signals=signals,
            tags=len(tags),
            new_labels=new_labels,
        )

    def _still_claimed(self, state: AssignmentTagState, scope: str) -> bool:
        """Reload the claimed row; False once it is locked or no longer running."""
        self.states.reload_for_update(state)
        if state.manual_locked or state.status != AssignmentTagStatus.RUNNING.value:
            logger.info(
                f"[clustering] claim_lost {scope} status={state.status} "
                f"locked={state.manual_locked}"
            )
            return False
        return True

    def _released(self, state: AssignmentTagState) -> JobResult:
        status = "locked" if state.manual_locked else "superseded"
        return JobResult(status=status, sample_count=state.sample_count or 0)

    def _register_labels(
        self, owner_id: str, tags: List[ClusteredTag]
    ) -> tuple[List[str], int]:
        """
        Insert first-sight labels into the dictionary.

        Labels already known (active or merged) keep the dictionary's display
        text so variants of one label share a spelling.

        Returns:
            Tuple of (display label per tag, number of new entries)
        """
        index = self.dictionary.normalized_index(owner_id)
        labels: List[str] = []
        created = 0
        for tag in tags:
            normalized = normalize_tag_label(tag.label)
            entry: Optional[TagDictionaryEntry] = index.get(normalized)
            if entry is None:
                entry = self.dictionary.create(
                    owner_id=owner_id,
                    label=tag.label,
                    normalized_label=normalized,
                )
                index[normalized] = entry
                created += 1
            labels.append(entry.label)
        return labels, created

    def _result(
        self,
        status: str,
        sample_count: int,
        started: float,
        scope: str,
        signals: Optional[List[LayerSignal]] = None,
        **details,
    ) -> JobResult:
        duration_ms = (time.time() - started) * 1000
        logger.info(f"[clustering] done {scope} status={status} duration_ms={duration_ms:.0f}")
        return JobResult(
            status=status,
            sample_count=sample_count,
            details=details,
            signals=signals or [],
        )
