"""
Lexical Text Similarity
=======================
Bag-of-words helpers shared by the analysis, debate and consensus phases.

* :func:`cosine_similarity` compares word-frequency vectors built with numpy
  over tokens longer than three characters.
* :func:`jaccard_similarity` compares token sets over tokens longer than two
  characters.

Tokenisation case-folds and strips punctuation, so ``"Answer!"`` and
``"answer"`` are the same token.
"""

from __future__ import annotations

import re
from collections import Counter
from itertools import combinations
from typing import Iterable, Sequence

import numpy as np

_PUNCT_RE = re.compile(r"[^\w\s]")
_SENTENCE_RE = re.compile(r"[.!?]+")


def tokenize(text: str, min_length: int = 3) -> list[str]:
    """Case-folded, punctuation-free words of at least *min_length* characters."""
    cleaned = _PUNCT_RE.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) >= min_length]


def split_sentences(text: str) -> list[str]:
    """Split on runs of ``.``, ``!`` and ``?``; empty pieces are dropped."""
    return [s.strip() for s in _SENTENCE_RE.split(text) if s.strip()]


def ngrams(text: str, n: int = 3) -> list[str]:
    """Space-joined *n*-grams over tokens longer than two characters."""
    words = tokenize(text, min_length=3)
    return [" ".join(words[i:i + n]) for i in range(len(words) - n + 1)]


def cosine_similarity(a: str, b: str) -> float:
    """Cosine of the word-frequency vectors of *a* and *b* (tokens > 3 chars).

    Returns ``0.0`` when either text has no qualifying token.
    """
    freq_a = Counter(tokenize(a, min_length=4))
    freq_b = Counter(tokenize(b, min_length=4))
    if not freq_a or not freq_b:
        return 0.0

    vocab = sorted(set(freq_a) | set(freq_b))
    vec_a = np.array([freq_a[w] for w in vocab], dtype=float)
    vec_b = np.array([freq_b[w] for w in vocab], dtype=float)
    denom = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if denom == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / denom)


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over token sets (tokens > 2 chars)."""
    set_a = set(tokenize(a, min_length=3))
    set_b = set(tokenize(b, min_length=3))
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def mean_pairwise(texts: Sequence[str], metric=jaccard_similarity) -> float:
    """Average *metric* over every unordered pair; ``0.0`` for fewer than two texts."""
    pairs = list(combinations(texts, 2))
    if not pairs:
        return 0.0
    return sum(metric(a, b) for a, b in pairs) / len(pairs)


def significant_words(texts: Iterable[str], min_share: float = 0.5) -> set[str]:
    """Words (> 3 chars) occurring in at least *min_share* of *texts*."""
    texts = list(texts)
    if not texts:
        return set()
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(set(tokenize(text, min_length=4)))
    needed = len(texts) * min_share
    return {w for w, c in counts.items() if c >= needed}
