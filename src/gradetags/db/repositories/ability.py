"""
Ability dictionary, tag-to-ability mapping and ability aggregate repositories.
"""

import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from gradetags.db.repositories.base import BaseRepository
from gradetags.models.db import (
    AbilityAggregate,
    AbilityDictionaryEntry,
    DictionaryStatus,
    MappingSource,
    TagAbilityMapping,
)


class AbilityDictionaryRepository(BaseRepository[AbilityDictionaryEntry]):
    """Repository for AbilityDictionaryEntry model."""

    def __init__(self, session: Session):
        super().__init__(AbilityDictionaryEntry, session)

    def list_active(self, owner_id: str) -> List[AbilityDictionaryEntry]:
        return (
            self.session.query(AbilityDictionaryEntry)
            .filter(
                AbilityDictionaryEntry.owner_id == owner_id,
                AbilityDictionaryEntry.status == DictionaryStatus.ACTIVE.value,
            )
            .order_by(AbilityDictionaryEntry.created_at, AbilityDictionaryEntry.label)
            .all()
        )

    def get_for_owner(
        self, owner_id: str, ability_id: uuid.UUID
    ) -> Optional[AbilityDictionaryEntry]:
        return (
            self.session.query(AbilityDictionaryEntry)
            .filter(
                AbilityDictionaryEntry.id == ability_id,
                AbilityDictionaryEntry.owner_id == owner_id,
            )
            .first()
        )

    def normalized_index(self, owner_id: str) -> Dict[str, AbilityDictionaryEntry]:
        """Map normalized label to entry for every ability the owner has."""
        entries = (
            self.session.query(AbilityDictionaryEntry)
            .filter(AbilityDictionaryEntry.owner_id == owner_id)
            .all()
        )
        return {entry.normalized_label: entry for entry in entries}


class TagAbilityMappingRepository(BaseRepository[TagAbilityMapping]):
    """Repository for TagAbilityMapping model."""

    def __init__(self, session: Session):
        super().__init__(TagAbilityMapping, session)

    def list_for_owner(
        self, owner_id: str, source: Optional[str] = None
    ) -> List[TagAbilityMapping]:
        query = self.session.query(TagAbilityMapping).filter(
            TagAbilityMapping.owner_id == owner_id
        )
        if source:
            query = query.filter(TagAbilityMapping.source == source)
        return query.order_by(
            TagAbilityMapping.source,
            TagAbilityMapping.tag_id,
            TagAbilityMapping.ability_id,
        ).all()

    def replace_ai_mappings(
        self, owner_id: str, rows: Iterable[dict]
    ) -> List[TagAbilityMapping]:
        """
        Replace the owner's model-generated mappings.

        Manual pins are left in place; callers must not pass rows for tags
        that already carry a manual pin.
        """
        self.session.query(TagAbilityMapping).filter(
            TagAbilityMapping.owner_id == owner_id,
            TagAbilityMapping.source == MappingSource.AI.value,
        ).delete(synchronize_session=False)
        self.session.flush()

        inserted = [
            TagAbilityMapping(owner_id=owner_id, source=MappingSource.AI.value, **row)
            for row in rows
        ]
        self.session.add_all(inserted)
        self.session.flush()
        return inserted

    def pin_manual(
        self,
        owner_id: str,
        tag_id: uuid.UUID,
        ability_id: uuid.UUID,
    ) -> TagAbilityMapping:
        """Replace every mapping of a tag with one manual mapping."""
        self.session.query(TagAbilityMapping).filter(
            TagAbilityMapping.owner_id == owner_id,
            TagAbilityMapping.tag_id == tag_id,
        ).delete(synchronize_session=False)
        self.session.flush()
        return self.create(
            owner_id=owner_id,
            tag_id=tag_id,
            ability_id=ability_id,
            confidence=1.0,
            source=MappingSource.MANUAL.value,
        )


class AbilityAggregateRepository(BaseRepository[AbilityAggregate]):
    """Repository for AbilityAggregate model."""

    def __init__(self, session: Session):
        super().__init__(AbilityAggregate, session)

    def list_for_owner(self, owner_id: str) -> List[AbilityAggregate]:
        return (
            self.session.query(AbilityAggregate)
            .filter(AbilityAggregate.owner_id == owner_id)
            .order_by(AbilityAggregate.total_count.desc())
            .all()
        )

    def replace_for_owner(
        self, owner_id: str, rows: Iterable[dict]
    ) -> List[AbilityAggregate]:
        """Replace the owner's ability rollup."""
        self.session.query(AbilityAggregate).filter(
            AbilityAggregate.owner_id == owner_id
        ).delete(synchronize_session=False)
        self.session.flush()

        inserted = [AbilityAggregate(owner_id=owner_id, **row) for row in rows]
        self.session.add_all(inserted)
        self.session.flush()
        return inserted
