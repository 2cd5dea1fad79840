"""Prompts for the clustering, dictionary merge and ability mapping jobs."""

from typing import Iterable, Sequence

from gradetags.taxonomy.issues import IssueStat

SYSTEM_PROMPT = (
    "You are a teaching analytics assistant. You turn free-text grading "
    "feedback into a small, stable vocabulary of error tags and ability "
    "categories for teachers."
)

NO_ENTRIES = "(none yet)"

TAG_CLUSTERING_PROMPT = """Cluster the issue list below into {min_tags} to {max_tags} high-level error tags.

# Rules
- Write every label in {language}, 2 to 6 characters long.
- Do not mention question-specific details in a label.
- If a tag is close to an existing tag, reuse the existing wording exactly; otherwise create a new one.
- `count` is the number of students affected by the tag.
- `examples` holds at most 2 short issue phrases from the list.

Return ONLY valid JSON in this format:
{{"tags":[{{"label":"tag","count":12,"examples":["example 1","example 2"]}}]}}

# Existing tags
{dictionary}

# Issue list (issue｜students)
{issues}
"""

DICTIONARY_MERGE_PROMPT = """Group the tags below that are the same or nearly the same concept. Never merge different concepts.

# Rules
- For each group pick a clear, general `canonical` label that appears in the list.
- `members` lists every label of the group, including the canonical one.
- If nothing should be merged, return an empty array.

Return ONLY valid JSON in this format:
{{"groups":[{{"canonical":"tag","members":["tag A","tag B"]}}]}}

# Tags (label｜total count｜assignments)
{usage}
"""

ABILITY_MAPPING_PROMPT = """Classify each tag below into one ability category.

# Rules
- Write ability names in {language}, 2 to 6 characters long.
- Map every tag to exactly 1 ability category.
- If a category is close to an existing one, reuse the existing name; otherwise create a new one.
- `confidence` is a number from 0.0 to 1.0.

Return ONLY valid JSON in this format:
{{"abilities":[{{"label":"ability"}}],"mappings":[{{"tag":"tag","ability":"ability","confidence":0.82}}]}}

# Existing ability categories
{abilities}

# Tags (label｜total count｜assignments)
{usage}
"""


def format_usage_lines(items: Iterable[tuple[str, int, int]]) -> str:
    """Render (label, total, assignments) rows as ``label｜total｜assignments`` lines."""
    lines = [f"- {label}｜{total}｜{assignments}" for label, total, assignments in items]
    return "\n".join(lines) if lines else NO_ENTRIES


def build_tag_prompt(
    issue_stats: Sequence[IssueStat],
    dictionary_labels: Sequence[str],
    language: str,
    max_tags: int = 8,
) -> str:
    issues = "\n".join(f"- {stat.issue}｜{stat.count}" for stat in issue_stats)
    return TAG_CLUSTERING_PROMPT.format(
        min_tags=min(4, max_tags),
        max_tags=max_tags,
        language=language,
        dictionary="、".join(dictionary_labels) if dictionary_labels else NO_ENTRIES,
        issues=issues or NO_ENTRIES,
    )


def build_merge_prompt(usage: Iterable[tuple[str, int, int]]) -> str:
    return DICTIONARY_MERGE_PROMPT.format(usage=format_usage_lines(usage))


def build_ability_prompt(
    usage: Iterable[tuple[str, int, int]],
    ability_labels: Sequence[str],
    language: str,
) -> str:
    return ABILITY_MAPPING_PROMPT.format(
        language=language,
        abilities="、".join(ability_labels) if ability_labels else NO_ENTRIES,
        usage=format_usage_lines(usage),
    )
