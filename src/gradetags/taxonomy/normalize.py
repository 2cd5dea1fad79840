"""
Label and text normalization plus tolerant JSON extraction.

Model replies are free text that should contain one JSON object. The
extractor scans for balanced top-level objects (skipping braces inside
string literals) and returns the first one that parses; anything else is a
``ModelOutputError``.
"""

import json
import math
import re
import unicodedata
from typing import Any, Optional

from gradetags.exceptions import ModelOutputError

_WHITESPACE = re.compile(r"\s+")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

# Upper bounds for scanning model output
MAX_SCAN_CHARS = 200_000
MAX_CANDIDATES = 20


def normalize_tag_label(label: Any) -> str:
    """
    Identity form of a tag label: NFKC, all whitespace removed, casefolded.

    Full-width and half-width variants of the same text fold together.
    """
    if not label:
        return ""
    text = unicodedata.normalize("NFKC", str(label))
    return _WHITESPACE.sub("", text).casefold()


# Ability categories share the tag folding rules
normalize_ability_label = normalize_tag_label


def normalize_issue_text(text: Any) -> str:
    """Collapse runs of whitespace to one space and trim."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", str(text)).strip()


def clean_label(value: Any) -> str:
    """Display form of a label: trimmed string, or empty when not a string."""
    if not isinstance(value, str):
        return ""
    return normalize_issue_text(value)


def parse_count(value: Any) -> Optional[int]:
    """
    Parse a count the way a lenient integer parser would.

    Accepts ints, finite floats (truncated) and strings with a leading
    integer ("12", "12 students"). Booleans and everything else give None.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else None
    return None


def parse_confidence(value: Any) -> Optional[float]:
    """Confidence clamped to [0, 1]; non-numeric values give None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return min(1.0, max(0.0, number))


def clean_examples(value: Any, limit: int = 2) -> Optional[list[str]]:
    """Up to ``limit`` trimmed, non-empty example strings (None if not a list)."""
    if not isinstance(value, list):
        return None
    examples = [item.strip() for item in value if isinstance(item, str) and item.strip()]
    return examples[:limit]


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the object opened at ``start``."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_json_object(text: Optional[str]) -> dict:
    """
    Locate and parse the first well-formed JSON object in ``text``.

    Surrounding commentary and markdown fences are tolerated.

    Raises:
        ModelOutputError: If no balanced object parses as a JSON object
    """
    if not text or not text.strip():
        raise ModelOutputError("model output is empty", raw_length=0)

    scan = text[:MAX_SCAN_CHARS]
    position = scan.find("{")
    candidates = 0
    while position != -1 and candidates < MAX_CANDIDATES:
        candidates += 1
        end = _balanced_end(scan, position)
        parsed = None
        if end is not None:
            try:
                parsed = json.loads(scan[position : end + 1])
            except json.JSONDecodeError:
                parsed = None
        if isinstance(parsed, dict):
            return parsed
        position = scan.find("{", position + 1)

    raise ModelOutputError(
        "model output does not contain a JSON object", raw_length=len(text)
    )
