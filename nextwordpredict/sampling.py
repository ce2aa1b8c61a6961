"""Turns raw next token scores into a short list of word suggestions.

The pipeline has three stages, each returning new Candidate values:
    select_top_candidates    - bounded top-K over the logits, raw score in Candidate.logit
    softmax_with_temperature - Candidate.weight = exp((logit - max) / T),
                               Candidate.probability = weight / sum of weights
    sample_suggestions       - roulette wheel draws without replacement over Candidate.probability
"""
import heapq
import re
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence

import numpy as np

from nextwordpredict.exceptions import InvalidTemperatureException

# Allow words, apostrophes, and basic punctuation
LEXICAL_PATTERN = re.compile(r"^[\s'a-zA-Z,.:;\-]+$")

NEG_INF = float("-inf")


@dataclass(frozen=True)
class Candidate:
    id: int
    text: str
    logit: float
    weight: Optional[float] = None
    probability: Optional[float] = None


def select_top_candidates(logits: Sequence[float],
                          k: int,
                          decode: Callable[[int], str]) -> List[Candidate]:
    """
    Find the k highest scoring vocabulary entries using a min-heap of capacity k.
    Entries scored negative infinity are disallowed and never returned.
    :param logits: raw scores, one per vocabulary entry
    :param k: maximum number of candidates
    :param decode: maps a token id to its text, only called for the survivors
    :return: candidates in descending score order
    """
    if k <= 0:
        return []
    if isinstance(logits, np.ndarray):
        logits = logits.tolist()

    # Heap of (score, token id), the weakest survivor sits at index 0
    heap = []
    for i, score in enumerate(logits):
        # Also drops NaN
        if not score > NEG_INF:
            continue
        if len(heap) < k:
            heapq.heappush(heap, (score, i))
        elif score > heap[0][0]:
            heapq.heappushpop(heap, (score, i))

    heap.sort(key=lambda entry: entry[0], reverse=True)
    return [Candidate(id=i, text=decode(i), logit=score) for score, i in heap]


def softmax_with_temperature(candidates: List[Candidate], temperature: float) -> List[Candidate]:
    """
    Convert raw scores into a distribution over exactly these candidates.
    A temperature near 0 sharpens toward the best candidate, above 1 flattens.
    :param candidates: candidates carrying raw logits
    :param temperature: must be > 0
    :return: new candidates, same order, with weight and probability set
    """
    if not temperature > 0:
        raise InvalidTemperatureException(f"Temperature must be greater than zero, got {temperature}")
    if not candidates:
        return []

    logits = np.array([c.logit for c in candidates], dtype=np.float64)
    weights = np.exp((logits - logits.max()) / temperature)
    probabilities = weights / weights.sum()
    return [replace(c, weight=float(w), probability=float(p))
            for c, w, p in zip(candidates, weights, probabilities)]


def is_lexical(text: str) -> bool:
    """Non-empty and only letters, whitespace, apostrophes and basic punctuation"""
    return bool(text) and LEXICAL_PATTERN.match(text) is not None


def draw_index(pool: List[Candidate], target: float) -> int:
    """
    Spin the roulette wheel: first candidate whose cumulative probability reaches target.
    The last candidate absorbs any floating point shortfall.
    """
    cumulative = 0.0
    for i, candidate in enumerate(pool):
        cumulative += candidate.probability
        if cumulative >= target:
            return i
    return len(pool) - 1


def sample_suggestions(candidates: List[Candidate],
                       top_k: int,
                       rng: np.random.Generator = None) -> List[str]:
    """
    Draw up to top_k distinct, lexically valid suggestions without replacement.

    Each slot gets at most two draws: if the first pick fails the lexical filter (or repeats a
    suggestion) one more pick is made, then the slot is abandoned. Every pick leaves the pool.
    Probabilities are not renormalized after removals, later draws still use the original scale
    so the mass of removed candidates falls through to the end of the pool.
    :param candidates: candidates with probability set
    :param top_k: maximum number of suggestions
    :param rng: random generator, a fresh default one if not given
    :return: suggestions in the order they were drawn
    """
    if rng is None:
        rng = np.random.default_rng()

    suggestions = []
    pool = list(candidates)
    for _ in range(top_k):
        if not pool:
            break
        for _attempt in range(2):
            if not pool:
                break
            choice = pool.pop(draw_index(pool, rng.random()))
            if is_lexical(choice.text) and choice.text not in suggestions:
                suggestions.append(choice.text)
                break
    return suggestions
