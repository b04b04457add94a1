"""Text similarity helpers for repetition detection."""

from __future__ import annotations

import re

_TOKEN_SPLIT = re.compile(r"[\s.,;:!?\-()\[\]{}\"']+")
_FRAGMENT_SPLIT = re.compile(r"[.!?\n]+")

STUCK_PHRASES = (
    "let me try",
    "i apologize",
    "i'll try again",
    "let me attempt",
    "trying again",
    "one more time",
    "another approach",
)


def _tokenize(text: str) -> set[str]:
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if t}


def compute_similarity(a: str, b: str) -> float:
    """Jaccard index over lower-cased word tokens, in [0, 1]."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    tokens_a, tokens_b = _tokenize(a), _tokenize(b)
    if not tokens_a and not tokens_b:
        return 1.0
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def find_repeated_phrases(a: str, b: str, max_results: int = 5) -> list[str]:
    phrases: list[str] = []
    fragments_a = [f for f in _FRAGMENT_SPLIT.split(a) if len(f.strip()) > 20]
    fragments_b = [f for f in _FRAGMENT_SPLIT.split(b) if len(f.strip()) > 20]
    for frag_a in fragments_a:
        for frag_b in fragments_b:
            if compute_similarity(frag_a, frag_b) >= 0.9:
                phrases.append(frag_a.strip()[:60] + "...")
                if len(phrases) >= max_results:
                    return phrases
    return phrases
