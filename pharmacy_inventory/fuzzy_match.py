"""
Fuzzy drug-name matching.

Resolves free-text drug queries ("propfol", "Morphine 10mg") against catalog
names. Names are normalised first so that case, punctuation and dosage units do
not count as differences, then scored by containment or Levenshtein distance.
"""

import re
from typing import Iterable, List, Sequence, Tuple

from pharmacy_inventory.config import DEFAULT_FUZZY_THRESHOLD

_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALPHANUMERIC_RE = re.compile(r"[^a-z0-9\s]")
_UNIT_TOKEN_RE = re.compile(r"\b(mg|ml|mcg|iu|units?)\b")

# Containment only counts once the shorter name is this long
MIN_SUBSTRING_LENGTH = 3


def normalize_drug_name(name: str) -> str:
    """Lowercase, strip punctuation and dosage units, collapse whitespace."""
    normalized = _WHITESPACE_RE.sub(" ", name.lower().strip())
    normalized = _NON_ALPHANUMERIC_RE.sub("", normalized)
    normalized = _UNIT_TOKEN_RE.sub("", normalized)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j - 1], previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """
    Similarity ratio between two drug names in [0, 1].

    Equal names after normalisation score 1.0. If one name contains the other
    (and the shorter one has at least three characters) the score is the
    length ratio; otherwise it is one minus the normalised edit distance.
    """
    s1 = normalize_drug_name(a)
    s2 = normalize_drug_name(b)

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0

    shorter, longer = (s1, s2) if len(s1) <= len(s2) else (s2, s1)
    if len(shorter) >= MIN_SUBSTRING_LENGTH and shorter in longer:
        return len(shorter) / len(longer)

    distance = levenshtein_distance(s1, s2)
    return 1.0 - distance / max(len(s1), len(s2))


def matches(a: str, b: str, threshold: float = DEFAULT_FUZZY_THRESHOLD) -> bool:
    """True when ``similarity(a, b)`` reaches ``threshold``."""
    return similarity(a, b) >= threshold


def find_best_matches(
    query: str,
    candidates: Iterable[str],
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
    limit: int = 10
) -> List[Tuple[str, float]]:
    """Return ``(candidate, score)`` pairs at or above threshold, best first."""
    scored = [(candidate, similarity(query, candidate)) for candidate in _unique(candidates)]
    scored = [pair for pair in scored if pair[1] >= threshold]
    # sorted() is stable, ties keep catalog order
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]


def suggest(query: str, candidates: Iterable[str], limit: int = 5) -> List[str]:
    """Nearest distinct candidate names regardless of threshold."""
    scored = [(candidate, similarity(query, candidate)) for candidate in _unique(candidates)]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return [candidate for candidate, score in scored[:limit] if score > 0]


def _unique(values: Iterable[str]) -> Sequence[str]:
    seen = set()
    ordered = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
