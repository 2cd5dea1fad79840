"""
Assignment tag state and dictionary merge state repositories.

Both state machines are claimed through a conditional UPDATE so that two
overlapping sweeps cannot both move the same row to ``running``.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import update
from sqlalchemy.orm import Session

from gradetags.db.repositories.base import BaseRepository
from gradetags.models.db import (
    AssignmentTagState,
    AssignmentTagStatus,
    MergeStateStatus,
    TagDictionaryMergeState,
)


class AssignmentTagStateRepository(BaseRepository[AssignmentTagState]):
    """Repository for AssignmentTagState model."""

    def __init__(self, session: Session):
        super().__init__(AssignmentTagState, session)

    def get_state(
        self, owner_id: str, assignment_id: str, refresh: bool = False
    ) -> Optional[AssignmentTagState]:
        """
        Get the state row for an assignment.

        Args:
            owner_id: Owner account id
            assignment_id: Assignment id
            refresh: Reload column values from the database even if the row
                is already in the identity map

        Returns:
            AssignmentTagState or None
        """
        return self.session.get(
            AssignmentTagState,
            (owner_id, assignment_id),
            populate_existing=refresh,
        )

    def get_or_create(self, owner_id: str, assignment_id: str) -> AssignmentTagState:
        """Get the state row, creating an idle one on first sight."""
        state = self.get_state(owner_id, assignment_id)
        if state is None:
            state = self.create(
                owner_id=owner_id,
                assignment_id=assignment_id,
                status=AssignmentTagStatus.IDLE.value,
                dirty=False,
                manual_locked=False,
            )
        return state

    def reload_for_update(self, state: AssignmentTagState) -> AssignmentTagState:
        """
        Re-read a state row and hold its row lock until the transaction ends.

        Events and overrides committed by other sessions since the row was
        loaded become visible; on backends with row locks they wait for the
        caller's commit instead of being overwritten by it.
        """
        self.session.refresh(state, with_for_update=True)
        return state

    def list_for_owner(
        self, owner_id: str, assignment_id: Optional[str] = None
    ) -> List[AssignmentTagState]:
        """States for an owner, optionally narrowed to one assignment."""
        query = self.session.query(AssignmentTagState).filter(
            AssignmentTagState.owner_id == owner_id
        )
        if assignment_id:
            query = query.filter(AssignmentTagState.assignment_id == assignment_id)
        return query.order_by(AssignmentTagState.assignment_id).all()

    def list_candidates(
        self,
        statuses: Sequence[str],
        owner_id: Optional[str] = None,
        assignment_id: Optional[str] = None,
    ) -> List[AssignmentTagState]:
        """
        Unlocked states in the given statuses, ordered by owner and assignment.

        Manual-locked rows are never returned.
        """
        query = self.session.query(AssignmentTagState).filter(
            AssignmentTagState.status.in_(list(statuses)),
            AssignmentTagState.manual_locked.is_(False),
        )
        if owner_id:
            query = query.filter(AssignmentTagState.owner_id == owner_id)
        if assignment_id:
            query = query.filter(AssignmentTagState.assignment_id == assignment_id)
        return query.order_by(
            AssignmentTagState.owner_id, AssignmentTagState.assignment_id
        ).all()

    def claim(
        self,
        owner_id: str,
        assignment_id: str,
        expected_status: str,
        now: datetime,
    ) -> bool:
        """
        Move a state to ``running`` if it is still in ``expected_status``.

        The claim clears ``dirty`` so that events arriving during the run
        are detectable at finalization.

        Returns:
            True if this caller won the claim
        """
        result = self.session.execute(
            update(AssignmentTagState)
            .where(
                AssignmentTagState.owner_id == owner_id,
                AssignmentTagState.assignment_id == assignment_id,
                AssignmentTagState.status == expected_status,
                AssignmentTagState.manual_locked.is_(False),
            )
            .values(
                status=AssignmentTagStatus.RUNNING.value,
                dirty=False,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_owner_ids(self) -> List[str]:
        """Distinct owners that have any assignment state."""
        rows = self.session.query(AssignmentTagState.owner_id).distinct().all()
        return sorted(row.owner_id for row in rows)

    def sample_counts(
        self, owner_id: str, assignment_ids: Iterable[str]
    ) -> Dict[str, int]:
        """Map assignment id to its last recorded sample count (0 when unknown)."""
        ids = list(set(assignment_ids))
        if not ids:
            return {}
        rows = (
            self.session.query(
                AssignmentTagState.assignment_id, AssignmentTagState.sample_count
            )
            .filter(
                AssignmentTagState.owner_id == owner_id,
                AssignmentTagState.assignment_id.in_(ids),
            )
            .all()
        )
        return {row.assignment_id: row.sample_count or 0 for row in rows}


class MergeStateRepository(BaseRepository[TagDictionaryMergeState]):
    """Repository for TagDictionaryMergeState model."""

    def __init__(self, session: Session):
        super().__init__(TagDictionaryMergeState, session)

    def get_state(
        self, owner_id: str, refresh: bool = False
    ) -> Optional[TagDictionaryMergeState]:
        return self.session.get(
            TagDictionaryMergeState, owner_id, populate_existing=refresh
        )

    def get_or_create(self, owner_id: str) -> TagDictionaryMergeState:
        state = self.get_state(owner_id)
        if state is None:
            state = self.create(
                owner_id=owner_id,
                status=MergeStateStatus.IDLE.value,
                dirty=False,
            )
        return state

    def list_candidates(
        self,
        statuses: Sequence[str] = (MergeStateStatus.PENDING.value,),
        owner_ids: Optional[Sequence[str]] = None,
    ) -> List[TagDictionaryMergeState]:
        """Merge states in the given statuses, optionally limited to some owners."""
        query = self.session.query(TagDictionaryMergeState).filter(
            TagDictionaryMergeState.status.in_(list(statuses))
        )
        if owner_ids:
            query = query.filter(TagDictionaryMergeState.owner_id.in_(list(owner_ids)))
        return query.order_by(TagDictionaryMergeState.owner_id).all()

    def claim(self, owner_id: str, expected_status: str, now: datetime) -> bool:
        """Move a merge state to ``running`` if still in ``expected_status``. True if this caller won."""
        result = self.session.execute(
            update(TagDictionaryMergeState)
            .where(
                TagDictionaryMergeState.owner_id == owner_id,
                TagDictionaryMergeState.status == expected_status,
            )
            .values(
                status=MergeStateStatus.RUNNING.value,
                dirty=False,
                error_message=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
