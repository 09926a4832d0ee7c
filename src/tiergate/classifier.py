"""Question complexity classification.

Pure functions: no I/O. Rules are evaluated in priority order and the
first match wins; they are not scored cumulatively. Keyword matching is a
case-insensitive substring search, so "show" also matches "how".
"""

from __future__ import annotations

import re

_ENTERPRISE = re.compile(
    r"complex|advanced analysis|multiple perspectives|enterprise|strategic",
    re.IGNORECASE,
)
_EXPLANATORY = re.compile(r"why|how|explain|analyze|describe|compare", re.IGNORECASE)
_THOROUGH = re.compile(
    r"detailed|comprehensive|in depth|thorough|elaborate|extensive|complete",
    re.IGNORECASE,
)
_MILD_DETAIL = re.compile(r"detail|more|information|about|tell|show", re.IGNORECASE)

_WHITESPACE = re.compile(r"\s+")

MIN_COMPLEXITY = 1
MAX_COMPLEXITY = 4


def word_count(question: str) -> int:
    """Number of pieces after splitting the raw string on whitespace runs.

    Leading or trailing whitespace yields an empty piece that still counts,
    which keeps the count stable for identical raw input.
    """
    return len(_WHITESPACE.split(question))


def classify(question: str, has_image: bool = False) -> int:
    """Return the complexity score (1-4) for a question.

    ``has_image`` is accepted for call-site symmetry with pricing but never
    changes the score.
    """
    lowered = question.lower()
    words = word_count(question)

    if words > 30 or _ENTERPRISE.search(lowered):
        return 4
    if _EXPLANATORY.search(lowered):
        return 3
    if _THOROUGH.search(lowered):
        return 3
    if words > 15:
        return 2
    if _MILD_DETAIL.search(lowered):
        return 2
    return MIN_COMPLEXITY
