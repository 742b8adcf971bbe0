"""Domain keyword extraction used for similarity grouping."""

import re
from typing import FrozenSet, Iterable

# Curated vocabularies, matched case-insensitively on word boundaries
TECHNOLOGY_PATTERNS = [
    r"\b(javascript|python|java|react|node\.?js|angular|vue|typescript|php|ruby|go|rust|swift|kotlin)\b",
    r"\b(aws|azure|gcp|docker|kubernetes|jenkins|git|github|gitlab)\b",
    r"\b(sql|mysql|postgresql|mongodb|redis|elasticsearch)\b",
    r"\b(machine learning|ai|data science|analytics|api|rest|graphql)\b",
]

INDUSTRY_PATTERNS = [
    r"\b(software|web|mobile|frontend|backend|fullstack|devops|qa|testing)\b",
    r"\b(finance|healthcare|education|marketing|sales|consulting)\b",
    r"\b(manager|lead|senior|junior|developer|engineer|analyst|designer)\b",
]

_COMPILED = [re.compile(p, re.IGNORECASE) for p in TECHNOLOGY_PATTERNS + INDUSTRY_PATTERNS]


def extract_keywords(text: str) -> FrozenSet[str]:
    """Return the lower-cased vocabulary terms found in ``text``."""
    if not text:
        return frozenset()
    found = set()
    for pattern in _COMPILED:
        found.update(match.lower() for match in pattern.findall(text))
    # "node.js" and "nodejs" are the same technology
    if "node.js" in found:
        found.discard("node.js")
        found.add("nodejs")
    return frozenset(found)


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard similarity of two keyword sets. Two empty sets score 0."""
    a, b = set(a), set(b)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)
