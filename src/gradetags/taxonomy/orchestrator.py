"""
Pipeline orchestrator.

One sweep runs every due assignment state (sequentially, one transaction per
item), then dispatches the layer signals the jobs returned: new labels touch
the owner's merge debounce, due merges run, stale domains are rolled up,
and each owner whose dictionary changed gets one ability mapping run. A
failing item is recorded and never aborts the rest of the sweep.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AssignmentTagStateRepository,
    MergeStateRepository,
    TagDictionaryRepository,
)
from gradetags.models.db import MergeStateStatus
from gradetags.taxonomy.ability import AbilityMappingJob
from gradetags.taxonomy.clustering import ClusteringJob
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.domain_rollup import DomainRollup
from gradetags.taxonomy.merge import DictionaryMergeJob
from gradetags.taxonomy.providers.base import LLMProvider
from gradetags.taxonomy.signals import JobResult, Layer, LayerSignal
from gradetags.taxonomy.state_machine import (
    SWEEP_ALL_STATUSES,
    SWEEP_STATUSES,
    fail_merge,
    fail_run,
    finish_merge,
    is_due,
    merge_is_due,
    record_dictionary_change,
)
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)

SCOPE_DUE = "due"
SCOPE_ALL = "all"
LAYERS_SIGNALS = "signals"
LAYERS_ALL = "all"


@dataclass
class SweepRequest:
    """
    Parameters of one sweep.

    Attributes:
        owner_id: Limit the sweep to one owner
        assignment_id: Limit the sweep to one assignment
        force: Ignore debounce timing (and retry failed merges)
        scope: ``due`` picks pending states; ``all`` also re-runs ready,
            failed and insufficient_samples states
        layers: ``signals`` only runs the layers the jobs made stale;
            ``all`` also rebuilds every domain and ability rollup of the
            touched owners
    """

    owner_id: Optional[str] = None
    assignment_id: Optional[str] = None
    force: bool = False
    scope: str = SCOPE_DUE
    layers: str = LAYERS_SIGNALS


@dataclass
class ItemOutcome:
    """Result of one assignment clustering run."""

    owner_id: str
    assignment_id: str
    ok: bool
    status: str
    sample_count: Optional[int] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OwnerOutcome:
    """Result of one cascaded layer run (merge, domain or ability)."""

    owner_id: str
    layer: str
    ok: bool
    status: Optional[str] = None
    domain: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SweepReport:
    items: List[ItemOutcome] = field(default_factory=list)
    merges: List[OwnerOutcome] = field(default_factory=list)
    domains: List[OwnerOutcome] = field(default_factory=list)
    abilities: List[OwnerOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.items)

    @property
    def ok(self) -> int:
        return sum(1 for item in self.items if item.ok)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if not item.ok)

    @property
    def has_failures(self) -> bool:
        outcomes = self.merges + self.domains + self.abilities
        return self.failed > 0 or any(not outcome.ok for outcome in outcomes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "ok": self.ok,
            "failed": self.failed,
            "items": [asdict(item) for item in self.items],
            "merges": [asdict(outcome) for outcome in self.merges],
            "domains": [asdict(outcome) for outcome in self.domains],
            "abilities": [asdict(outcome) for outcome in self.abilities],
        }


class PipelineOrchestrator:
    """
    Schedules the taxonomy jobs and cascades their layer signals.

    The orchestrator owns every commit: a claim is committed before its job
    runs, the job's writes and state finalization are committed together,
    and a failure rolls the job back before the ``failed`` state is
    committed in a fresh transaction.
    """

    def __init__(
        self,
        session: Session,
        provider: Optional[LLMProvider] = None,
        config: Optional[PipelineConfig] = None,
        clock: Callable = utc_now,
    ):
        self.session = session
        self.provider = provider
        self.config = config or PipelineConfig.from_settings()
        self.clock = clock
        self.states = AssignmentTagStateRepository(session)
        self.merge_states = MergeStateRepository(session)
        self.dictionary = TagDictionaryRepository(session)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self, request: SweepRequest) -> SweepReport:
        """Run due assignment states and cascade to the dependent layers."""
        report = SweepReport()
        now = self.clock()
        statuses = SWEEP_ALL_STATUSES if request.scope == SCOPE_ALL else SWEEP_STATUSES

        candidates = self.states.list_candidates(
            statuses, owner_id=request.owner_id, assignment_id=request.assignment_id
        )
        due: List[Tuple[str, str, str]] = [
            (state.owner_id, state.assignment_id, state.status)
            for state in candidates
            if request.force or is_due(state, now, self.config)
        ]
        logger.info(
            f"[sweep] start owner={request.owner_id or '*'} candidates={len(candidates)} "
            f"due={len(due)} force={request.force} scope={request.scope}"
        )
        # Release the read transaction before the per-item claims
        self.session.commit()

        signals: List[LayerSignal] = []
        touched_owners: List[str] = []
        for owner_id, assignment_id, status in due:
            if owner_id not in touched_owners:
                touched_owners.append(owner_id)
            outcome, result = self.run_assignment(owner_id, assignment_id, status)
            report.items.append(outcome)
            if result is not None:
                signals.extend(result.signals)

        self._touch_merge_states(
            {signal.owner_id for signal in signals if signal.layer == Layer.MERGE}
        )
        report.merges.extend(
            self.run_merges(
                owner_id=request.owner_id, force=request.force, signals=signals
            )
        )

        full_owners: List[str] = []
        if request.layers == LAYERS_ALL:
            full_owners = self._cascade_owners(request, touched_owners)
        report.domains.extend(self._dispatch_domains(signals, full_owners))

        ability_owners: List[str] = list(full_owners)
        for signal in signals:
            if signal.layer == Layer.ABILITY and signal.owner_id not in ability_owners:
                ability_owners.append(signal.owner_id)
        for owner_id in ability_owners:
            report.abilities.append(self.run_ability(owner_id))

        logger.info(
            f"[sweep] done processed={report.processed} ok={report.ok} "
            f"failed={report.failed} merges={len(report.merges)} "
            f"domains={len(report.domains)} abilities={len(report.abilities)}"
        )
        return report

    def _cascade_owners(
        self, request: SweepRequest, touched_owners: List[str]
    ) -> List[str]:
        """Owners whose layers are fully rebuilt by a ``layers=all`` sweep."""
        owners = list(touched_owners)
        if request.owner_id and request.owner_id not in owners:
            owners.append(request.owner_id)
        if not owners:
            owners = self.dictionary.list_owner_ids() or self.states.list_owner_ids()
        return owners

    def _dispatch_domains(
        self, signals: List[LayerSignal], full_owners: List[str]
    ) -> List[OwnerOutcome]:
        """Run each stale domain once; owner-wide signals refresh every domain of the owner."""
        owners = list(full_owners)
        for signal in signals:
            if (
                signal.layer == Layer.DOMAIN
                and signal.domain is None
                and signal.owner_id not in owners
            ):
                owners.append(signal.owner_id)

        domains = sorted(
            {
                (signal.owner_id, signal.domain)
                for signal in signals
                if signal.layer == Layer.DOMAIN
                and signal.domain is not None
                and signal.owner_id not in owners
            }
        )
        outcomes = [self.run_domain(owner_id, domain) for owner_id, domain in domains]
        outcomes.extend(self.run_domain(owner_id) for owner_id in owners)
        return outcomes

    # ------------------------------------------------------------------
    # Assignment layer
    # ------------------------------------------------------------------

    def run_assignment(
        self, owner_id: str, assignment_id: str, expected_status: str
    ) -> Tuple[ItemOutcome, Optional[JobResult]]:
        """
        Claim and run the clustering job for one assignment.

        Returns:
            Tuple of (outcome, job result or None when skipped or failed)
        """
        if not self.states.claim(owner_id, assignment_id, expected_status, self.clock()):
            self.session.commit()
            logger.info(
                f"[sweep] claim_skipped owner={owner_id} assignment={assignment_id}"
            )
            return (
                ItemOutcome(
                    owner_id=owner_id,
                    assignment_id=assignment_id,
                    ok=True,
                    status="skipped",
                    details={"reason": "claimed_elsewhere"},
                ),
                None,
            )
        self.session.commit()

        try:
            job = ClusteringJob(self.session, self.provider, self.config, self.clock)
            result = job.run(owner_id, assignment_id)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            state = self.states.get_state(owner_id, assignment_id, refresh=True)
            if state is not None:
                fail_run(state, self.clock(), str(e))
                sample_count = state.sample_count
            else:
                sample_count = None
            self.session.commit()
            logger.warning(
                f"[sweep] item_failed owner={owner_id} assignment={assignment_id} error={e}"
            )
            return (
                ItemOutcome(
                    owner_id=owner_id,
                    assignment_id=assignment_id,
                    ok=False,
                    status="failed",
                    sample_count=sample_count,
                    error=str(e),
                ),
                None,
            )

        return (
            ItemOutcome(
                owner_id=owner_id,
                assignment_id=assignment_id,
                ok=True,
                status=result.status,
                sample_count=result.sample_count,
                details=dict(result.details),
            ),
            result,
        )

    # ------------------------------------------------------------------
    # Merge layer
    # ------------------------------------------------------------------

    def _touch_merge_states(self, owner_ids: Set[str]) -> None:
        for owner_id in sorted(owner_ids):
            try:
                state = self.merge_states.get_or_create(owner_id)
                record_dictionary_change(state, self.clock(), self.config)
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                logger.warning(f"[merge] touch_failed owner={owner_id} error={e}")

    def run_merges(
        self,
        owner_id: Optional[str] = None,
        force: bool = False,
        signals: Optional[List[LayerSignal]] = None,
    ) -> List[OwnerOutcome]:
        """
        Run due dictionary merges.

        Args:
            owner_id: Limit to one owner
            force: Ignore debounce timing and retry failed merges
            signals: Collects the layer signals of successful merges
        """
        statuses = [MergeStateStatus.PENDING.value]
        if force:
            statuses.append(MergeStateStatus.FAILED.value)
        now = self.clock()
        due = [
            (state.owner_id, state.status)
            for state in self.merge_states.list_candidates(
                statuses, owner_ids=[owner_id] if owner_id else None
            )
            if force or merge_is_due(state, now, self.config)
        ]
        self.session.commit()
        return [self.run_merge(owner, status, signals) for owner, status in due]

    def run_merge(
        self,
        owner_id: str,
        expected_status: str,
        signals: Optional[List[LayerSignal]] = None,
    ) -> OwnerOutcome:
        """Claim and run the dictionary merge job for one owner."""
        if not self.merge_states.claim(owner_id, expected_status, self.clock()):
            self.session.commit()
            return OwnerOutcome(
                owner_id=owner_id,
                layer=Layer.MERGE.value,
                ok=True,
                status="skipped",
                skipped="claimed_elsewhere",
            )
        self.session.commit()

        try:
            job = DictionaryMergeJob(
                self.session, self.provider, self.config, self.clock
            )
            result = job.run(owner_id)
            state = self.merge_states.get_state(owner_id, refresh=True)
            finish_merge(
                state,
                self.clock(),
                self.config,
                model=result.details.get("model"),
                prompt_version=self.config.merge_prompt_version,
                merged=result.status == "merged",
            )
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            state = self.merge_states.get_state(owner_id, refresh=True)
            if state is not None:
                fail_merge(state, self.clock(), str(e))
            self.session.commit()
            logger.warning(f"[merge] failed owner={owner_id} error={e}")
            return OwnerOutcome(
                owner_id=owner_id, layer=Layer.MERGE.value, ok=False, error=str(e)
            )

        if signals is not None:
            signals.extend(result.signals)
        return OwnerOutcome(
            owner_id=owner_id,
            layer=Layer.MERGE.value,
            ok=True,
            status=result.status,
            skipped=result.skipped,
            details=dict(result.details),
        )

    # ------------------------------------------------------------------
    # Domain and ability layers
    # ------------------------------------------------------------------

    def run_domain(self, owner_id: str, domain: Optional[str] = None) -> OwnerOutcome:
        """Refresh one domain rollup, or every domain of the owner when ``domain`` is None."""
        try:
            rollup = DomainRollup(self.session, self.clock)
            if domain is None:
                result = rollup.refresh_owner(owner_id)
            else:
                result = rollup.refresh_domain(owner_id, domain)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.warning(f"[domain] failed owner={owner_id} domain={domain} error={e}")
            return OwnerOutcome(
                owner_id=owner_id,
                layer=Layer.DOMAIN.value,
                ok=False,
                domain=domain,
                error=str(e),
            )
        return OwnerOutcome(
            owner_id=owner_id,
            layer=Layer.DOMAIN.value,
            ok=True,
            status=result.status,
            domain=domain,
            skipped=result.skipped,
            details=dict(result.details),
        )

    def run_ability(self, owner_id: str) -> OwnerOutcome:
        """Run the ability mapping job (and rollup) for one owner."""
        try:
            job = AbilityMappingJob(
                self.session, self.provider, self.config, self.clock
            )
            result = job.run(owner_id)
            self.session.commit()
        except Exception as e:
            self.session.rollback()
            logger.warning(f"[ability] failed owner={owner_id} error={e}")
            return OwnerOutcome(
                owner_id=owner_id, layer=Layer.ABILITY.value, ok=False, error=str(e)
            )
        return OwnerOutcome(
            owner_id=owner_id,
            layer=Layer.ABILITY.value,
            ok=True,
            status=result.status,
            skipped=result.skipped,
            details=dict(result.details),
        )
