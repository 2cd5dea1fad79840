"""
Issue extraction from graded submissions.

An issue is a short phrase describing one mistake. Itemized mistakes
(reason plus question) are preferred; the free-form weaknesses list is the
fallback. Frequencies count distinct students, not raw occurrences.
"""

import json
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from gradetags.models.db import Submission
from gradetags.taxonomy.normalize import normalize_issue_text


@dataclass(frozen=True)
class IssueStat:
    """An issue phrase and the number of distinct students who produced it."""

    issue: str
    count: int


def parse_grading_result(raw: Any) -> Optional[dict]:
    """Return the grading result as a dict (JSON strings are decoded)."""
    if not raw:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    return raw if isinstance(raw, dict) else None


def extract_issues(grading: Optional[dict]) -> List[str]:
    """
    Extract normalized issue phrases from one grading result.

    Duplicates within the submission are removed, first occurrence wins.
    """
    if not grading:
        return []

    phrases: List[str] = []
    mistakes = grading.get("mistakes")
    if isinstance(mistakes, list) and mistakes:
        for item in mistakes:
            if not isinstance(item, dict):
                continue
            parts = [str(item[key]) for key in ("reason", "question") if item.get(key)]
            phrases.append(normalize_issue_text(" ".join(parts)))
    else:
        weaknesses = grading.get("weaknesses")
        if isinstance(weaknesses, list):
            phrases = [normalize_issue_text(item) for item in weaknesses]

    return list(dict.fromkeys(phrase for phrase in phrases if phrase))


def build_issue_stats(
    submissions: Iterable[Submission], limit: Optional[int] = None
) -> List[IssueStat]:
    """
    Aggregate issues over graded submissions.

    Each submission is attributed to its student id, falling back to the
    submission id, so a student's repeated mistake counts once.

    Args:
        submissions: Graded submissions of one assignment
        limit: Keep only the top ``limit`` issues

    Returns:
        Issues ordered by descending count, ties by first appearance
    """
    students_by_issue: dict[str, set[str]] = {}
    for submission in submissions:
        issues = extract_issues(parse_grading_result(submission.grading_result))
        if not issues:
            continue
        student_key = submission.student_id or submission.id
        for issue in issues:
            students_by_issue.setdefault(issue, set()).add(student_key)

    stats = [
        IssueStat(issue=issue, count=len(students))
        for issue, students in students_by_issue.items()
    ]
    # sorted() is stable, so ties keep first-appearance order
    stats = sorted(stats, key=lambda stat: stat.count, reverse=True)
    if limit is not None:
        stats = stats[:limit]
    return stats
