"""Duplicate-text (DRY) analysis over an agent graph's prompts.

Two independent passes over every node prompt plus the global
instructions:
  - exact: identical sentences appearing in two or more locations
  - fuzzy: near-identical sentence pairs by normalized edit-distance ratio

Both passes are pure functions of the graph text and only produce
suggestions; ``voice_gym.templating.extract_snippet`` applies one.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from voice_gym.graph.schema import AgentGraph

INSTRUCTIONS_LOCATION = "<instructions>"

EXACT_MIN_LENGTH = 20
FUZZY_MIN_LENGTH = 30
FUZZY_THRESHOLD = 0.8

# q-gram length for the fuzzy-pass count filter.
QGRAM_SIZE = 3

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")
_WHITESPACE_RE = re.compile(r"\s+")


class DuplicateMatch(BaseModel):
    """A group of duplicated text and where it occurs."""

    text: str
    locations: list[str]
    variants: list[str] = Field(default_factory=list)
    similarity: float | None = None


class DryReport(BaseModel):
    """Result of both passes."""

    exact: list[DuplicateMatch] = Field(default_factory=list)
    fuzzy: list[DuplicateMatch] = Field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        """True when neither pass found anything."""
        return not self.exact and not self.fuzzy


@dataclass
class _Sentence:
    text: str
    locations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def split_sentences(text: str) -> list[str]:
    """Split text at sentence punctuation followed by whitespace, and at newlines."""
    return [part.strip() for part in _SENTENCE_SPLIT_RE.split(text) if part and part.strip()]


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text.casefold()).strip()


def _levenshtein_distance(a: str, b: str, max_dist: int | None = None) -> int:
    """Edit distance via dynamic programming with a single-row buffer.

    With ``max_dist`` set, only the diagonal band of that width is filled
    and the scan stops as soon as a whole row exceeds it; any distance
    above the cutoff is reported as ``max_dist + 1``.
    """
    # Keep b as the shorter string so rows stay small.
    if len(a) < len(b):
        a, b = b, a
    n, m = len(a), len(b)
    if max_dist is None:
        max_dist = n
    over = max_dist + 1
    if n - m > max_dist:
        return over
    if not b:
        return n

    prev = [j if j <= max_dist else over for j in range(m + 1)]
    for i in range(1, n + 1):
        char_a = a[i - 1]
        curr = [over] * (m + 1)
        if i <= max_dist:
            curr[0] = i
        row_min = curr[0]
        for j in range(max(1, i - max_dist), min(m, i + max_dist) + 1):
            cost = 0 if char_a == b[j - 1] else 1
            value = min(prev[j] + 1, curr[j - 1] + 1, prev[j - 1] + cost, over)
            curr[j] = value
            if value < row_min:
                row_min = value
        if row_min > max_dist:
            return over
        prev = curr
    return prev[m]


def _qgrams(text: str) -> Counter[str]:
    return Counter(text[i:i + QGRAM_SIZE] for i in range(len(text) - QGRAM_SIZE + 1))


def _max_distance(longest: int, threshold: float) -> int:
    """Largest edit distance that still scores at least ``threshold``."""
    # Epsilon absorbs float error in (1 - threshold) so boundary pairs survive.
    return max(0, math.floor((1.0 - threshold) * longest + 1e-9))


def similarity(a: str, b: str) -> float:
    """Normalized similarity in [0.0, 1.0]; symmetric in its arguments.

    Computed as ``1 - distance / max(len)`` over case-folded,
    whitespace-collapsed text. Two empty strings are identical.
    """
    na, nb = _normalize(a), _normalize(b)
    longest = max(len(na), len(nb))
    if longest == 0:
        return 1.0
    return 1.0 - _levenshtein_distance(na, nb) / longest


def collect_sentences(graph: AgentGraph) -> list[tuple[str, str]]:
    """Return ``(sentence, location)`` pairs for every prompt in the graph."""
    sources = [(node_id, node.state_prompt) for node_id, node in graph.nodes.items()]
    sources.append((INSTRUCTIONS_LOCATION, graph.instructions))
    pairs: list[tuple[str, str]] = []
    for location, text in sources:
        pairs.extend((sentence, location) for sentence in split_sentences(text))
    return pairs


def _group(graph: AgentGraph) -> list[_Sentence]:
    groups: dict[str, _Sentence] = {}
    for text, location in collect_sentences(graph):
        entry = groups.setdefault(text, _Sentence(text))
        if location not in entry.locations:
            entry.locations.append(location)
    return list(groups.values())


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------


def find_exact_duplicates(graph: AgentGraph, min_length: int = EXACT_MIN_LENGTH) -> list[DuplicateMatch]:
    """Sentences of at least ``min_length`` chars found in two or more locations."""
    matches = [
        DuplicateMatch(text=s.text, locations=sorted(s.locations))
        for s in _group(graph)
        if len(s.text) >= min_length and len(s.locations) >= 2
    ]
    matches.sort(key=lambda m: (-len(m.locations), m.text))
    return matches


def find_fuzzy_duplicates(
    graph: AgentGraph,
    threshold: float = FUZZY_THRESHOLD,
    min_length: int = FUZZY_MIN_LENGTH,
    exclude: set[str] | None = None,
) -> list[DuplicateMatch]:
    """Near-duplicate sentence pairs.

    Args:
        graph: Graph to analyze.
        threshold: Minimum similarity to report a pair.
        min_length: Minimum length of the shorter sentence in a pair.
        exclude: Sentence texts to skip (already reported as exact).

    Returns:
        Matches sorted by descending similarity.
    """
    skip = exclude or set()
    candidates = [s for s in _group(graph) if s.text not in skip and len(s.text) >= min_length]
    normalized = [_normalize(s.text) for s in candidates]
    grams = [_qgrams(text) for text in normalized]

    matches: list[DuplicateMatch] = []
    for i, first in enumerate(candidates):
        for j in range(i + 1, len(candidates)):
            second = candidates[j]
            na, nb = normalized[i], normalized[j]
            longest = max(len(na), len(nb))
            if longest == 0:
                continue
            max_dist = _max_distance(longest, threshold)
            if abs(len(na) - len(nb)) > max_dist:
                continue
            # Each edit destroys at most QGRAM_SIZE q-grams of the longer text.
            required = longest - QGRAM_SIZE + 1 - QGRAM_SIZE * max_dist
            if required > 0 and sum((grams[i] & grams[j]).values()) < required:
                continue
            distance = _levenshtein_distance(na, nb, max_dist)
            if distance > max_dist:
                continue
            score = 1.0 - distance / longest
            if score < threshold:
                continue
            representative = first.text if len(first.text) >= len(second.text) else second.text
            matches.append(DuplicateMatch(
                text=representative,
                variants=[first.text, second.text],
                locations=sorted(set(first.locations) | set(second.locations)),
                similarity=round(score, 4),
            ))

    matches.sort(key=lambda m: (-(m.similarity or 0.0), m.text))
    return matches


def analyze_graph(
    graph: AgentGraph,
    exact_min_length: int = EXACT_MIN_LENGTH,
    fuzzy_threshold: float = FUZZY_THRESHOLD,
    fuzzy_min_length: int = FUZZY_MIN_LENGTH,
) -> DryReport:
    """Run the exact pass, then the fuzzy pass over what exact did not report."""
    exact = find_exact_duplicates(graph, min_length=exact_min_length)
    fuzzy = find_fuzzy_duplicates(
        graph,
        threshold=fuzzy_threshold,
        min_length=fuzzy_min_length,
        exclude={m.text for m in exact},
    )
    return DryReport(exact=exact, fuzzy=fuzzy)
