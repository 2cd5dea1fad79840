"""
Tag dictionary repository.
"""

import uuid
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories.base import BaseRepository
from gradetags.models.db import DictionaryStatus, TagDictionaryEntry


class TagDictionaryRepository(BaseRepository[TagDictionaryEntry]):
    """Repository for TagDictionaryEntry model."""

    def __init__(self, session: Session):
        super().__init__(TagDictionaryEntry, session)

    def list_by_owner(self, owner_id: str) -> List[TagDictionaryEntry]:
        """All entries for an owner (active and merged), in creation order."""
        return (
            self.session.query(TagDictionaryEntry)
            .filter(TagDictionaryEntry.owner_id == owner_id)
            .order_by(TagDictionaryEntry.created_at, TagDictionaryEntry.label)
            .all()
        )

    def list_active(self, owner_id: str) -> List[TagDictionaryEntry]:
        """Active entries for an owner, in creation order."""
        return (
            self.session.query(TagDictionaryEntry)
            .filter(
                TagDictionaryEntry.owner_id == owner_id,
                TagDictionaryEntry.status == DictionaryStatus.ACTIVE.value,
            )
            .order_by(TagDictionaryEntry.created_at, TagDictionaryEntry.label)
            .all()
        )

    def count_active(self, owner_id: str) -> int:
        return (
            self.session.query(TagDictionaryEntry)
            .filter(
                TagDictionaryEntry.owner_id == owner_id,
                TagDictionaryEntry.status == DictionaryStatus.ACTIVE.value,
            )
            .count()
        )

    def get_for_owner(
        self, owner_id: str, tag_id: uuid.UUID
    ) -> Optional[TagDictionaryEntry]:
        """Get an entry only if it belongs to the owner."""
        return (
            self.session.query(TagDictionaryEntry)
            .filter(
                TagDictionaryEntry.id == tag_id,
                TagDictionaryEntry.owner_id == owner_id,
            )
            .first()
        )

    def find_by_normalized(
        self, owner_id: str, normalized_label: str, active_only: bool = False
    ) -> Optional[TagDictionaryEntry]:
        """
        Find an entry by normalized label, preferring the active one.

        Args:
            owner_id: Owner account id
            normalized_label: Folded label
            active_only: Ignore merged entries

        Returns:
            TagDictionaryEntry or None
        """
        entries = (
            self.session.query(TagDictionaryEntry)
            .filter(
                TagDictionaryEntry.owner_id == owner_id,
                TagDictionaryEntry.normalized_label == normalized_label,
            )
            .order_by(TagDictionaryEntry.created_at)
            .all()
        )
        for entry in entries:
            if entry.is_active:
                return entry
        if active_only or not entries:
            return None
        return entries[0]

    def normalized_index(self, owner_id: str) -> Dict[str, TagDictionaryEntry]:
        """
        Map every normalized label to its entry, active entries winning.
        """
        index: Dict[str, TagDictionaryEntry] = {}
        for entry in self.list_by_owner(owner_id):
            current = index.get(entry.normalized_label)
            if current is None or (entry.is_active and not current.is_active):
                index[entry.normalized_label] = entry
        return index

    def list_pointing_to(
        self, owner_id: str, tag_id: uuid.UUID
    ) -> List[TagDictionaryEntry]:
        """Merged entries whose merge pointer targets ``tag_id``."""
        return (
            self.session.query(TagDictionaryEntry)
            .filter(
                TagDictionaryEntry.owner_id == owner_id,
                TagDictionaryEntry.merged_to_tag_id == tag_id,
            )
            .all()
        )

    def list_owner_ids(self) -> List[str]:
        """Distinct owners that have any dictionary entry."""
        rows = self.session.query(TagDictionaryEntry.owner_id).distinct().all()
        return sorted(row.owner_id for row in rows)
