"""
Submission and assignment repositories.

Both tables belong to the grading platform; the pipeline only reads them.
"""

from typing import Dict, Iterable, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from gradetags.db.repositories.base import BaseRepository
from gradetags.models.db import Assignment, Submission

GRADED_STATUS = "graded"
UNCATEGORIZED_DOMAIN = "uncategorized"


class SubmissionRepository(BaseRepository[Submission]):
    """Repository for Submission model."""

    def __init__(self, session: Session):
        super().__init__(Submission, session)

    def list_graded(self, owner_id: str, assignment_id: str) -> List[Submission]:
        """
        Get graded submissions for an assignment.

        A submission counts as graded when it carries a grading result or
        its status is ``graded``.
        """
        return (
            self.session.query(Submission)
            .filter(
                Submission.owner_id == owner_id,
                Submission.assignment_id == assignment_id,
                or_(
                    Submission.grading_result.isnot(None),
                    Submission.status == GRADED_STATUS,
                ),
            )
            .order_by(Submission.id)
            .all()
        )


class AssignmentRepository(BaseRepository[Assignment]):
    """Repository for Assignment model."""

    def __init__(self, session: Session):
        super().__init__(Assignment, session)

    def get_for_owner(self, owner_id: str, assignment_id: str) -> Optional[Assignment]:
        """Get an assignment only if it belongs to the owner."""
        return (
            self.session.query(Assignment)
            .filter(Assignment.id == assignment_id, Assignment.owner_id == owner_id)
            .first()
        )

    def domain_of(self, owner_id: str, assignment_id: str) -> str:
        """Domain bucket for an assignment (``uncategorized`` when unset or unknown)."""
        assignment = self.get_for_owner(owner_id, assignment_id)
        if assignment is None or not assignment.domain:
            return UNCATEGORIZED_DOMAIN
        return assignment.domain

    def domains_by_assignment(
        self, owner_id: str, assignment_ids: Iterable[str]
    ) -> Dict[str, str]:
        """Map each known assignment id to its domain bucket."""
        ids = list(set(assignment_ids))
        if not ids:
            return {}
        rows = (
            self.session.query(Assignment.id, Assignment.domain)
            .filter(Assignment.owner_id == owner_id, Assignment.id.in_(ids))
            .all()
        )
        return {row.id: row.domain or UNCATEGORIZED_DOMAIN for row in rows}

    def list_ids_in_domain(self, owner_id: str, domain: str) -> List[str]:
        """Assignment ids in a domain; ``uncategorized`` also matches a null domain."""
        query = self.session.query(Assignment.id).filter(Assignment.owner_id == owner_id)
        if domain == UNCATEGORIZED_DOMAIN:
            query = query.filter(
                or_(Assignment.domain.is_(None), Assignment.domain == UNCATEGORIZED_DOMAIN)
            )
        else:
            query = query.filter(Assignment.domain == domain)
        return [row.id for row in query.order_by(Assignment.id).all()]
