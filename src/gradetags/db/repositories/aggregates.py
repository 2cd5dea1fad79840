"""
Aggregate repositories.

Aggregates are derived state: every write replaces the whole set for its
scope (delete-then-insert) inside the caller's transaction, so a failure
before commit leaves the previous set untouched.
"""

from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories.base import BaseRepository
from gradetags.models.db import AssignmentTagAggregate, DomainTagAggregate


class AssignmentTagAggregateRepository(BaseRepository[AssignmentTagAggregate]):
    """Repository for AssignmentTagAggregate model."""

    def __init__(self, session: Session):
        super().__init__(AssignmentTagAggregate, session)

    def list_for_owner(
        self, owner_id: str, assignment_id: Optional[str] = None
    ) -> List[AssignmentTagAggregate]:
        """Aggregate rows for an owner, highest count first within each assignment."""
        query = self.session.query(AssignmentTagAggregate).filter(
            AssignmentTagAggregate.owner_id == owner_id
        )
        if assignment_id:
            query = query.filter(AssignmentTagAggregate.assignment_id == assignment_id)
        return query.order_by(
            AssignmentTagAggregate.assignment_id,
            AssignmentTagAggregate.tag_count.desc(),
            AssignmentTagAggregate.tag_label,
        ).all()

    def list_for_assignments(
        self, owner_id: str, assignment_ids: Iterable[str]
    ) -> List[AssignmentTagAggregate]:
        ids = list(set(assignment_ids))
        if not ids:
            return []
        return (
            self.session.query(AssignmentTagAggregate)
            .filter(
                AssignmentTagAggregate.owner_id == owner_id,
                AssignmentTagAggregate.assignment_id.in_(ids),
            )
            .order_by(AssignmentTagAggregate.assignment_id, AssignmentTagAggregate.tag_label)
            .all()
        )

    def replace_for_assignment(
        self,
        owner_id: str,
        assignment_id: str,
        rows: Iterable[dict],
    ) -> List[AssignmentTagAggregate]:
        """
        Replace the aggregate set of one assignment.

        Args:
            owner_id: Owner account id
            assignment_id: Assignment id
            rows: Column dicts (tag_label, tag_count, examples, generated_at,
                model, prompt_version)

        Returns:
            The inserted rows
        """
        self.session.query(AssignmentTagAggregate).filter(
            AssignmentTagAggregate.owner_id == owner_id,
            AssignmentTagAggregate.assignment_id == assignment_id,
        ).delete(synchronize_session=False)
        # Deletes must reach the database before inserts that reuse the same key
        self.session.flush()

        inserted = [
            AssignmentTagAggregate(owner_id=owner_id, assignment_id=assignment_id, **row)
            for row in rows
        ]
        self.session.add_all(inserted)
        self.session.flush()
        return inserted


class DomainTagAggregateRepository(BaseRepository[DomainTagAggregate]):
    """Repository for DomainTagAggregate model."""

    def __init__(self, session: Session):
        super().__init__(DomainTagAggregate, session)

    def list_for_owner(
        self, owner_id: str, domain: Optional[str] = None
    ) -> List[DomainTagAggregate]:
        query = self.session.query(DomainTagAggregate).filter(
            DomainTagAggregate.owner_id == owner_id
        )
        if domain:
            query = query.filter(DomainTagAggregate.domain == domain)
        return query.order_by(
            DomainTagAggregate.domain,
            DomainTagAggregate.tag_count.desc(),
            DomainTagAggregate.tag_label,
        ).all()

    def replace_for_domain(
        self, owner_id: str, domain: str, rows: Iterable[dict]
    ) -> List[DomainTagAggregate]:
        """Replace the rollup of one (owner, domain)."""
        self.session.query(DomainTagAggregate).filter(
            DomainTagAggregate.owner_id == owner_id,
            DomainTagAggregate.domain == domain,
        ).delete(synchronize_session=False)
        self.session.flush()

        inserted = [
            DomainTagAggregate(owner_id=owner_id, domain=domain, **row) for row in rows
        ]
        self.session.add_all(inserted)
        self.session.flush()
        return inserted
