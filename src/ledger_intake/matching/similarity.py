"""Description similarity shared by ledger dedup and multi-image merging.

Two descriptions are similar when, after normalization (lowercase, only
a-z and 0-9 kept), they are equal, one contains the other, or their
Dice coefficient over character bigram sets is at least 0.7.
"""

from __future__ import annotations

import re
from decimal import Decimal

SIMILARITY_THRESHOLD = 0.7
# Relative tolerance for amounts of the same item seen on two photos
RELATIVE_AMOUNT_TOLERANCE = Decimal("0.01")

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_description(value: str | None) -> str:
    """Lowercase and strip everything but ASCII letters and digits."""
    if not value:
        return ""
    return _NON_ALNUM.sub("", value.lower())


def bigrams(value: str) -> set[str]:
    return {value[i : i + 2] for i in range(len(value) - 1)}


def dice_coefficient(a: str, b: str) -> float:
    """Dice coefficient over bigram sets of two already-normalized strings.

    Strings shorter than two characters have no bigrams and score 1.0
    only when equal.
    """
    if len(a) < 2 or len(b) < 2:
        return 1.0 if a == b else 0.0

    bigrams_a = bigrams(a)
    bigrams_b = bigrams(b)
    overlap = len(bigrams_a & bigrams_b)
    return (2.0 * overlap) / (len(bigrams_a) + len(bigrams_b))


def description_similarity(a: str | None, b: str | None) -> float:
    """Similarity score in [0, 1]; 1.0 for equal or containing strings."""
    norm_a = normalize_description(a)
    norm_b = normalize_description(b)

    if norm_a == norm_b:
        return 1.0
    # Too short for bigrams: exact equality only
    if len(norm_a) < 2 or len(norm_b) < 2:
        return 0.0
    if norm_a in norm_b or norm_b in norm_a:
        return 1.0
    return dice_coefficient(norm_a, norm_b)


def is_similar_description(a: str | None, b: str | None) -> bool:
    return description_similarity(a, b) >= SIMILARITY_THRESHOLD


def amounts_match_relative(
    a: Decimal, b: Decimal, tolerance: Decimal = RELATIVE_AMOUNT_TOLERANCE
) -> bool:
    """Amounts equal within a relative tolerance.

    Both zero counts as equal; exactly one zero never does.
    """
    abs_a = abs(a)
    abs_b = abs(b)
    if abs_a == 0 and abs_b == 0:
        return True
    if abs_a == 0 or abs_b == 0:
        return False
    return abs(abs_a - abs_b) / max(abs_a, abs_b) <= tolerance
