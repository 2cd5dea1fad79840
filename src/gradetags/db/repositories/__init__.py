"""
Repository layer for database operations.

Provides a clean API for the scoped queries, conditional claims and
replace-set writes the taxonomy pipeline needs.
"""

from gradetags.db.repositories.ability import (
    AbilityAggregateRepository,
    AbilityDictionaryRepository,
    TagAbilityMappingRepository,
)
from gradetags.db.repositories.aggregates import (
    AssignmentTagAggregateRepository,
    DomainTagAggregateRepository,
)
from gradetags.db.repositories.base import BaseRepository
from gradetags.db.repositories.submission import (
    AssignmentRepository,
    SubmissionRepository,
)
from gradetags.db.repositories.tag_dictionary import TagDictionaryRepository
from gradetags.db.repositories.tag_state import (
    AssignmentTagStateRepository,
    MergeStateRepository,
)

__all__ = [
    "AbilityAggregateRepository",
    "AbilityDictionaryRepository",
    "AssignmentRepository",
    "AssignmentTagAggregateRepository",
    "AssignmentTagStateRepository",
    "BaseRepository",
    "DomainTagAggregateRepository",
    "MergeStateRepository",
    "SubmissionRepository",
    "TagAbilityMappingRepository",
    "TagDictionaryRepository",
]
