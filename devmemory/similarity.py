"""Similarity scoring shared by fact search, PRD retrieval and merging."""

from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np

# Query words this short carry no signal for lexical matching.
_MIN_WORD_LEN = 3


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 for missing, empty, length-mismatched or zero-norm vectors.
    """
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0 or not np.isfinite(denom):
        return 0.0
    return float(np.dot(va, vb) / denom)


def query_words(query: str) -> List[str]:
    return [w for w in (query or "").lower().split() if len(w) >= _MIN_WORD_LEN]


def lexical_score(query: str, text: str) -> float:
    """Fraction of query words (len > 2) found as substrings of *text*."""
    words = query_words(query)
    if not words:
        return 0.0
    haystack = (text or "").lower()
    hits = sum(1 for w in words if w in haystack)
    return hits / len(words)
