"""
Fusion of keyword and semantic search results.

Keyword matches (produced elsewhere from parsed query terms) and semantic
matches (cosine similarities from :mod:`facesearch.similarity`) are combined
into one ranked list.  The combined score of an entity is additive::

    keyword_weight * keyword_score + semantic_weight * semantic_score

with a missing signal contributing ``0``.  Ties are broken by ascending
entity id so that identical inputs always give an identical ranking.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)


class SignalType(str, enum.Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class SignalContribution:
    signal: SignalType
    score: float
    weight: float

    @property
    def weighted_score(self) -> float:
        return self.weight * self.score


@dataclass(frozen=True)
class MergedResult:
    entity_id: str
    score: float
    sources: frozenset
    contributions: Tuple[SignalContribution, ...] = ()
    rank: int = 0

    def contribution(self, signal: SignalType) -> float:
        """Weighted score contributed by ``signal`` (``0.0`` if absent)."""
        for c in self.contributions:
            if c.signal == signal:
                return c.weighted_score
        return 0.0


@dataclass(frozen=True)
class QueryIntent:
    """Structured intent extracted from a query by an external parser.

    ``type`` is one of ``keyword``, ``semantic``, ``people``, ``location``,
    ``time`` or anything else (treated as mixed).
    """
    type: str
    confidence: float = 1.0
    terms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FusionStats:
    total: int
    with_both_sources: int
    keyword_only: int
    semantic_only: int
    avg_score: float


ScoreInput = Union[Mapping[str, float], Iterable[Tuple[str, float]]]

# keyword weight, semantic weight
INTENT_WEIGHTS: Dict[str, Tuple[float, float]] = {
    "keyword": (0.7, 0.3),
    "semantic": (0.2, 0.8),
    "people": (0.5, 0.5),
    "location": (0.5, 0.5),
    "time": (0.5, 0.5),
}


def _as_scores(results: Optional[ScoreInput]) -> Dict[str, float]:
    if results is None:
        return {}
    items = results.items() if isinstance(results, Mapping) else results
    scores: Dict[str, float] = {}
    for item in items:
        # ScoredCandidate-like objects are accepted as well as pairs
        if hasattr(item, "similarity"):
            entity_id, score = item.id, item.similarity
        else:
            entity_id, score = item
        score = float(score)
        # an entity listed twice keeps its best score
        if entity_id not in scores or score > scores[entity_id]:
            scores[entity_id] = score
    return scores


def normalize_keyword_score(match_score: float, scale: float = 100.0) -> float:
    """Map a keyword match score on ``[0, scale]`` onto ``[0, 1]``."""
    return min(max(match_score / scale, 0.0), 1.0)


def merge(keyword_results: Optional[ScoreInput], semantic_results: Optional[ScoreInput],
          keyword_weight: float = 0.6, semantic_weight: float = 0.4) -> List[MergedResult]:
    """Merge two scored result sets into one list sorted by fused score.

    Parameters
    ----------
    keyword_results, semantic_results: mapping or iterable of (id, score)
        The two signals.  Either may be empty.
    keyword_weight, semantic_weight: float
        Multipliers for each signal.  They need not sum to 1.

    Returns
    -------
    list of MergedResult
        Sorted by score descending, then entity id ascending.  Each result
        records which signals contributed in ``sources``.
    """
    keyword = _as_scores(keyword_results)
    semantic = _as_scores(semantic_results)
    merged: List[MergedResult] = []
    for entity_id in set(keyword) | set(semantic):
        contributions = []
        if entity_id in keyword:
            contributions.append(SignalContribution(SignalType.KEYWORD, keyword[entity_id], keyword_weight))
        if entity_id in semantic:
            contributions.append(SignalContribution(SignalType.SEMANTIC, semantic[entity_id], semantic_weight))
        score = keyword_weight * keyword.get(entity_id, 0.0) + semantic_weight * semantic.get(entity_id, 0.0)
        merged.append(MergedResult(
            entity_id=entity_id,
            score=score,
            sources=frozenset(c.signal for c in contributions),
            contributions=tuple(contributions),
        ))
    merged.sort(key=_by_score)
    return merged


def _ranked(results: Iterable[MergedResult]) -> List[MergedResult]:
    return [replace(r, rank=i + 1) for i, r in enumerate(results)]


def _by_keyword(r: MergedResult):
    return -r.contribution(SignalType.KEYWORD), r.entity_id


def _by_semantic(r: MergedResult):
    return -r.contribution(SignalType.SEMANTIC), r.entity_id


def _by_score(r: MergedResult):
    return -r.score, r.entity_id


_SORT_KEYS = {"keyword": _by_keyword, "semantic": _by_semantic, "mixed": _by_score}


def fusion_stats(results: List[MergedResult]) -> FusionStats:
    both = sum(1 for r in results if len(r.sources) == 2)
    keyword_only = sum(1 for r in results if r.sources == {SignalType.KEYWORD})
    semantic_only = sum(1 for r in results if r.sources == {SignalType.SEMANTIC})
    avg = sum(r.score for r in results) / len(results) if results else 0.0
    return FusionStats(len(results), both, keyword_only, semantic_only, avg)


@dataclass
class QueryFusionEngine:
    """Intent-aware fusion with filtering, truncation and ranking.

    The engine holds only its default weights; every call is otherwise pure.
    """
    keyword_weight: float = 0.6
    semantic_weight: float = 0.4
    intent_weights: Dict[str, Tuple[float, float]] = field(default_factory=lambda: dict(INTENT_WEIGHTS))

    def weights_for(self, intent: Optional[QueryIntent]) -> Tuple[float, float]:
        if intent is None:
            return self.keyword_weight, self.semantic_weight
        return self.intent_weights.get(intent.type, (self.keyword_weight, self.semantic_weight))

    def merge(self, keyword_results: Optional[ScoreInput], semantic_results: Optional[ScoreInput],
              keyword_weight: Optional[float] = None,
              semantic_weight: Optional[float] = None) -> List[MergedResult]:
        kw = self.keyword_weight if keyword_weight is None else keyword_weight
        sw = self.semantic_weight if semantic_weight is None else semantic_weight
        return merge(keyword_results, semantic_results, kw, sw)

    def search(self, keyword_results: Optional[ScoreInput], semantic_results: Optional[ScoreInput],
               intent: Optional[QueryIntent] = None, min_score: float = 0.0,
               limit: int = 50) -> List[MergedResult]:
        """Merge with intent-derived weights, drop results below ``min_score``
        and return the first ``limit`` with 1-based ranks."""
        kw, sw = self.weights_for(intent)
        merged = merge(keyword_results, semantic_results, kw, sw)
        kept = [r for r in merged if r.score >= min_score][:max(limit, 0)]
        logger.debug("Fused %d results (keyword weight %.2f, semantic weight %.2f), kept %d",
                     len(merged), kw, sw, len(kept))
        return _ranked(kept)

    @staticmethod
    def reorder(results: List[MergedResult], sort_by: str = "mixed") -> List[MergedResult]:
        """Re-rank by one signal (``keyword`` / ``semantic``) or the fused score."""
        if sort_by not in _SORT_KEYS:
            raise ValueError(f"unknown sort order {sort_by!r}")
        return _ranked(sorted(results, key=_SORT_KEYS[sort_by]))

    stats = staticmethod(fusion_stats)
