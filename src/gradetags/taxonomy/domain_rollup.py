"""
Rule-based domain rollup of assignment tag aggregates.

No model call. For one (owner, domain) the assignment aggregates are summed
per canonical label and the rollup set is replaced. A null domain counts
under the ``uncategorized`` bucket.
"""

import logging
from typing import Callable, Dict, Set

from sqlalchemy.orm import Session

from gradetags.db.repositories import (
    AssignmentRepository,
    AssignmentTagAggregateRepository,
    AssignmentTagStateRepository,
    DomainTagAggregateRepository,
    TagDictionaryRepository,
)
from gradetags.db.repositories.submission import UNCATEGORIZED_DOMAIN
from gradetags.taxonomy.signals import JobResult
from gradetags.taxonomy.usage import CanonicalIndex, collect_usage
from gradetags.utils.clock import utc_now

logger = logging.getLogger(__name__)

ROLLUP_MODEL = "rule"
ROLLUP_VERSION = "v1"


class DomainRollup:
    """Recompute domain tag aggregates for an owner."""

    def __init__(self, session: Session, clock: Callable = utc_now):
        self.session = session
        self.clock = clock
        self.assignments = AssignmentRepository(session)
        self.states = AssignmentTagStateRepository(session)
        self.dictionary = TagDictionaryRepository(session)
        self.assignment_aggregates = AssignmentTagAggregateRepository(session)
        self.domain_aggregates = DomainTagAggregateRepository(session)

    def refresh_domain(self, owner_id: str, domain: str) -> JobResult:
        """
        Replace the rollup of one domain.

        ``sample_count`` of a label is the sum of the sample counts of the
        assignments contributing to it.
        """
        domain = domain or UNCATEGORIZED_DOMAIN
        assignment_ids = self.assignments.list_ids_in_domain(owner_id, domain)
        rows = self.assignment_aggregates.list_for_assignments(owner_id, assignment_ids)

        index = CanonicalIndex(self.dictionary.list_by_owner(owner_id))
        usage = collect_usage(rows, index)
        samples = self.states.sample_counts(owner_id, assignment_ids)
        now = self.clock()

        ranked = sorted(usage.values(), key=lambda stats: (-stats.total, stats.label))
        self.domain_aggregates.replace_for_domain(
            owner_id,
            domain,
            [
                {
                    "tag_label": stats.label,
                    "tag_count": stats.total,
                    "assignment_count": stats.assignment_count,
                    "sample_count": sum(samples.get(aid, 0) for aid in stats.assignments),
                    "generated_at": now,
                    "model": ROLLUP_MODEL,
                    "prompt_version": ROLLUP_VERSION,
                }
                for stats in ranked
            ],
        )
        logger.info(
            f"[domain] refreshed owner={owner_id} domain={domain} "
            f"assignments={len(assignment_ids)} tags={len(ranked)}"
        )
        return JobResult(
            status="refreshed",
            details={"domain": domain, "tags": len(ranked)},
        )

    def refresh_owner(self, owner_id: str) -> JobResult:
        """
        Refresh every domain touched by the owner's assignment aggregates.

        Domains that only have stale rollup rows are refreshed too, which
        clears them.
        """
        assignment_ids = {
            row.assignment_id for row in self.assignment_aggregates.list_for_owner(owner_id)
        }
        known = self.assignments.domains_by_assignment(owner_id, assignment_ids)
        domains: Set[str] = {known.get(aid, UNCATEGORIZED_DOMAIN) for aid in assignment_ids}
        domains.update(row.domain for row in self.domain_aggregates.list_for_owner(owner_id))

        if not domains:
            return JobResult(
                status="skipped",
                skipped="no_assignments",
                details={"domains": 0, "assignments": 0},
            )

        tags_by_domain: Dict[str, int] = {}
        for domain in sorted(domains):
            result = self.refresh_domain(owner_id, domain)
            tags_by_domain[domain] = result.details["tags"]
        return JobResult(
            status="refreshed",
            details={
                "domains": len(domains),
                "assignments": len(assignment_ids),
                "tags_by_domain": tags_by_domain,
            },
        )
