"""Post-hoc response quality heuristic.

Pure and deterministic. The marker lists, their order, the weights and the
clamp bounds are fixed; changing any of them changes recorded scores.
"""

from __future__ import annotations

import re

BASE_SCORE = 0.70
MIN_SCORE = 0.30
MAX_SCORE = 1.00

UNCERTAINTY_MARKERS: tuple[str, ...] = (
    # English
    "i don't know",
    "i lack",
    "i lack the ability",
    "unclear",
    "unable to process",
    "cannot determine",
    "hard to say",
    "unable to",
    "cannot provide",
    # Turkish
    "bilmiyorum",
    "emin değilim",
    "bilinmiyor",
    "belirlenemedi",
    "kesin",
)

CONFIDENCE_MARKERS: tuple[str, ...] = (
    "ankara",
    "turkey",
    "türkiye",
    "capital",
    "başkent",
    "located",
    "yer al",
    "is",
    "dir",
    "was",
    "are",
)

_WHITESPACE = re.compile(r"\s+")


def score_quality(response_text: str, question: str, has_image: bool = False) -> float:
    """Score a response in [0.3, 1.0]."""
    score = BASE_SCORE
    lowered = response_text.lower()

    # Each distinct uncertainty marker present costs 0.10.
    uncertainty = sum(1 for marker in UNCERTAINTY_MARKERS if marker in lowered)
    score -= uncertainty * 0.10

    if len(response_text) < 10:
        score -= 0.20
    elif len(response_text) < 30:
        score -= 0.05

    confidence = sum(1 for marker in CONFIDENCE_MARKERS if marker in lowered)
    if confidence >= 2:
        score += 0.20

    # Relevance: more than half of the question's longer words echoed back.
    words = [w for w in _WHITESPACE.split(question.lower()) if len(w) > 3]
    if words:
        matching = sum(1 for w in words if w in lowered)
        if matching / len(words) > 0.5:
            score += 0.10

    if has_image:
        score += 0.15

    return max(MIN_SCORE, min(MAX_SCORE, score))
