"""
Tag usage statistics and canonical label folding.

Merged dictionary entries fold into their canonical entry, so usage and
rollups always count under the active label.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from gradetags.models.db import AssignmentTagAggregate, TagDictionaryEntry
from gradetags.taxonomy.normalize import normalize_tag_label


@dataclass
class TagUsage:
    """Total tag count and distinct assignments for one canonical label."""

    label: str
    total: int = 0
    assignments: Set[str] = field(default_factory=set)

    @property
    def assignment_count(self) -> int:
        return len(self.assignments)


class CanonicalIndex:
    """Resolve any normalized label to the entry it counts under."""

    def __init__(self, entries: Iterable[TagDictionaryEntry]):
        entries = list(entries)
        by_id = {entry.id: entry for entry in entries}
        self._by_normalized: Dict[str, TagDictionaryEntry] = {}
        for entry in entries:
            target = entry
            if not entry.is_active and entry.merged_to_tag_id in by_id:
                target = by_id[entry.merged_to_tag_id]
            current = self._by_normalized.get(entry.normalized_label)
            # An active entry owns its normalized label over any merged one
            if current is None or entry.is_active:
                self._by_normalized[entry.normalized_label] = target

    def resolve(self, label: str) -> Optional[TagDictionaryEntry]:
        """Canonical entry for ``label`` or None when the label is unknown."""
        return self._by_normalized.get(normalize_tag_label(label))

    def canonical_key(self, label: str) -> str:
        """Normalized label the given label counts under."""
        entry = self.resolve(label)
        return entry.normalized_label if entry else normalize_tag_label(label)

    def canonical_label(self, label: str) -> str:
        entry = self.resolve(label)
        return entry.label if entry else label


def collect_usage(
    rows: Iterable[AssignmentTagAggregate], index: CanonicalIndex
) -> Dict[str, TagUsage]:
    """Usage keyed by canonical normalized label."""
    usage: Dict[str, TagUsage] = {}
    for row in rows:
        key = index.canonical_key(row.tag_label)
        if not key:
            continue
        bucket = usage.setdefault(key, TagUsage(label=index.canonical_label(row.tag_label)))
        bucket.total += row.tag_count or 0
        bucket.assignments.add(row.assignment_id)
    return usage


def rank_by_usage(
    entries: Iterable[TagDictionaryEntry], usage: Dict[str, TagUsage]
) -> List[tuple[TagDictionaryEntry, int, int]]:
    """
    (entry, total, assignments) for each entry, highest total first.

    Ties keep the input order.
    """
    ranked = []
    for entry in entries:
        stats = usage.get(entry.normalized_label)
        ranked.append(
            (entry, stats.total if stats else 0, stats.assignment_count if stats else 0)
        )
    return sorted(ranked, key=lambda item: item[1], reverse=True)
