"""String similarity for heuristic offering/price matching."""

from __future__ import annotations

import re

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def string_similarity(a: str, b: str) -> float:
    """Edit-distance similarity in [0, 100] (case-insensitive, whitespace-collapsed)."""
    x = " ".join((a or "").lower().split())
    y = " ".join((b or "").lower().split())
    if not x and not y:
        return 100.0
    longest = max(len(x), len(y))
    return round((1.0 - levenshtein(x, y) / longest) * 100.0, 2)


def tokens(text: str) -> set[str]:
    return {t for t in _TOKEN_RE.findall((text or "").lower()) if len(t) > 2}


def token_overlap(a: set[str], b: set[str]) -> float:
    """Jaccard overlap in [0, 100]."""
    if not a or not b:
        return 0.0
    return 100.0 * len(a & b) / len(a | b)
