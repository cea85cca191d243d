"""
Cosine similarity and brute-force top-K retrieval.

The functions here are pure: they hold no state and can be called from any
number of readers at once.  :class:`SimilarityIndex` binds them to an
:class:`~facesearch.repository.EmbeddingRepository` to answer nearest
neighbour queries against stored vectors.

At the target scale (low thousands of vectors per type) a full scan with a
single matrix product is fast enough and, unlike approximate indexes, gives
exact and reproducible rankings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .repository import ANY_VERSION, EmbeddingRepository, VersionFilter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoredCandidate:
    id: str
    similarity: float
    rank: int = 0


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return ``dot(a, b) / (|a| * |b|)``, or ``0.0`` if either norm is zero.

    Vectors of different lengths are treated as unrelated and score ``0.0``.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        logger.warning("Vector length mismatch: %d vs %d", va.shape[0], vb.shape[0])
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape != vb.shape:
        return float("inf")
    return float(np.linalg.norm(va - vb))


def similarity_level(similarity: float) -> str:
    """Bucket a similarity into ``"high"``, ``"medium"`` or ``"low"``."""
    if similarity >= 0.7:
        return "high"
    if similarity >= 0.4:
        return "medium"
    return "low"


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row in float64; zero rows stay zero."""
    m = np.asarray(matrix, dtype=np.float64)
    if m.ndim == 1:
        m = m.reshape(1, -1)
    norms = np.linalg.norm(m, axis=1, keepdims=True)
    safe = np.where(norms == 0.0, 1.0, norms)
    return m / safe


def batch_similarity(query: Sequence[float], matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``."""
    if len(matrix) == 0:
        return np.zeros(0, dtype=np.float64)
    q = normalize_rows(np.asarray(query, dtype=np.float64))[0]
    return normalize_rows(matrix) @ q


def _rank(ids: Sequence[str], sims: np.ndarray, k: int, min_similarity: float) -> List[ScoredCandidate]:
    if k <= 0:
        return []
    keep = [(sid, float(s)) for sid, s in zip(ids, sims) if s >= min_similarity]
    # similarity descending, id ascending
    keep.sort(key=lambda item: (-item[1], item[0]))
    return [ScoredCandidate(id=sid, similarity=s, rank=i + 1) for i, (sid, s) in enumerate(keep[:k])]


def top_k(query: Sequence[float], candidates: Iterable[Tuple[str, Sequence[float]]],
          k: int, min_similarity: float = 0.0) -> List[ScoredCandidate]:
    """Return at most ``k`` candidates with similarity >= ``min_similarity``.

    Parameters
    ----------
    query: sequence of float
        Query vector.
    candidates: iterable of (id, vector)
        Vectors to scan.
    k: int
        Maximum number of results.
    min_similarity: float
        Lower bound (inclusive) on the cosine similarity.

    Returns
    -------
    list of ScoredCandidate
        Sorted by similarity descending; ties broken by ascending id.
    """
    pairs = list(candidates)
    if not pairs:
        return []
    ids = [cid for cid, _ in pairs]
    matrix = np.vstack([np.asarray(v, dtype=np.float64).ravel() for _, v in pairs])
    return _rank(ids, batch_similarity(query, matrix), k, min_similarity)


def multi_query_top_k(queries: Sequence[Sequence[float]], candidates: Iterable[Tuple[str, Sequence[float]]],
                      k: int, min_similarity: float = 0.0,
                      weights: Optional[Sequence[float]] = None) -> List[ScoredCandidate]:
    """Rank candidates by the weighted mean similarity to several queries.

    ``weights`` default to equal weights for every query.
    """
    if not queries:
        return []
    if weights is None:
        weights = [1.0 / len(queries)] * len(queries)
    if len(weights) != len(queries):
        raise ValueError("one weight per query vector is required")
    pairs = list(candidates)
    if not pairs:
        return []
    ids = [cid for cid, _ in pairs]
    matrix = np.vstack([np.asarray(v, dtype=np.float64).ravel() for _, v in pairs])
    combined = np.zeros(len(ids), dtype=np.float64)
    for q, w in zip(queries, weights):
        combined += w * batch_similarity(q, matrix)
    total = float(sum(weights))
    if total != 0.0:
        combined /= total
    return _rank(ids, combined, k, min_similarity)


class SimilarityIndex:
    """Nearest-neighbour queries against vectors held in the repository."""

    def __init__(self, repository: EmbeddingRepository) -> None:
        self.repository = repository

    def search(self, query: Sequence[float], vector_type: str = "semantic", k: int = 50,
               min_similarity: float = 0.1,
               version_filter: VersionFilter = ANY_VERSION) -> List[ScoredCandidate]:
        ids, matrix = self.repository.snapshot(vector_type, version_filter)
        return _rank(ids, batch_similarity(query, matrix), k, min_similarity)

    def find_similar(self, entity_id: str, vector_type: str = "semantic", k: int = 10,
                     min_similarity: float = 0.1,
                     version_filter: VersionFilter = ANY_VERSION) -> List[ScoredCandidate]:
        """Like :meth:`search`, using a stored vector as the query.

        The entity itself is excluded from the results.
        """
        query = self.repository.get(entity_id, vector_type)
        results = self.search(query, vector_type, k + 1, min_similarity, version_filter)
        others = [r for r in results if r.id != entity_id][:k]
        return [ScoredCandidate(id=r.id, similarity=r.similarity, rank=i + 1) for i, r in enumerate(others)]
