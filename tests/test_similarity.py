import numpy as np
import pytest

from conftest import SEMANTIC_DIM, basis, face_vec
from facesearch.errors import NotFound
from facesearch.repository import VersionFilter
from facesearch.similarity import (
    SimilarityIndex, cosine_similarity, euclidean_distance, multi_query_top_k, similarity_level, top_k,
)


def test_cosine_of_identical_vectors_is_one():
    v = np.array([0.3, -1.2, 4.0])
    assert cosine_similarity(v, v) == pytest.approx(1.0)


def test_cosine_is_scale_invariant():
    a = np.array([1.0, 2.0, 3.0])
    b = np.array([-2.0, 0.5, 1.0])
    assert cosine_similarity(a * 7.5, b) == pytest.approx(cosine_similarity(a, b))


def test_cosine_with_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_cosine_of_mismatched_lengths_is_zero():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


def test_cosine_is_symmetric():
    rng = np.random.default_rng(7)
    pairs = [(rng.normal(size=128), rng.normal(size=128)) for _ in range(100)]
    pairs.append((np.zeros(128), rng.normal(size=128)))
    pairs.append((face_vec(e0=1.0, e1=0.5), face_vec(e0=-1.0, e2=0.25)))
    for a, b in pairs:
        assert cosine_similarity(a, b) == cosine_similarity(b, a)
    assert cosine_similarity(*pairs[-1]) < 0


def test_euclidean_distance():
    assert euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)


def test_similarity_level_buckets():
    assert similarity_level(0.7) == "high"
    assert similarity_level(0.5) == "medium"
    assert similarity_level(0.39) == "low"


def test_top_k_orders_by_similarity_then_id():
    query = [1.0, 0.0]
    candidates = [
        ("c", [1.0, 0.0]),
        ("a", [1.0, 0.0]),
        ("b", [0.0, 1.0]),
        ("d", [0.6, 0.8]),
    ]
    results = top_k(query, candidates, k=3)
    assert [r.id for r in results] == ["a", "c", "d"]
    assert [r.rank for r in results] == [1, 2, 3]
    assert results[2].similarity == pytest.approx(0.6)


def test_top_k_respects_min_similarity_and_k():
    candidates = [(f"x{i}", [1.0, i / 10]) for i in range(10)]
    results = top_k([1.0, 0.0], candidates, k=100, min_similarity=0.99)
    assert all(r.similarity >= 0.99 for r in results)
    assert len(top_k([1.0, 0.0], candidates, k=2)) == 2


def test_top_k_edge_cases():
    assert top_k([1.0, 0.0], [], k=5) == []
    assert top_k([1.0, 0.0], [("a", [1.0, 0.0])], k=0) == []


def test_multi_query_uses_weighted_mean():
    candidates = [("a", [1.0, 0.0]), ("b", [0.0, 1.0])]
    equal = multi_query_top_k([[1.0, 0.0], [0.0, 1.0]], candidates, k=2)
    assert equal[0].similarity == pytest.approx(0.5)
    assert equal[1].similarity == pytest.approx(0.5)
    weighted = multi_query_top_k([[1.0, 0.0], [0.0, 1.0]], candidates, k=2, weights=[3.0, 1.0])
    assert [r.id for r in weighted] == ["a", "b"]
    assert weighted[0].similarity == pytest.approx(0.75)


def test_index_search_against_repository(repository):
    repository.put("p1", "semantic", basis(SEMANTIC_DIM, e0=1.0), 1)
    repository.put("p2", "semantic", basis(SEMANTIC_DIM, e0=0.6, e1=0.8), 1)
    repository.put("p3", "semantic", basis(SEMANTIC_DIM, e1=1.0), 2)
    index = SimilarityIndex(repository)
    results = index.search(basis(SEMANTIC_DIM, e0=1.0), "semantic", k=10, min_similarity=0.1)
    assert [r.id for r in results] == ["p1", "p2"]
    only_v2 = index.search(basis(SEMANTIC_DIM, e1=1.0), "semantic", k=10,
                           version_filter=VersionFilter.equal(2))
    assert [r.id for r in only_v2] == ["p3"]


def test_find_similar_excludes_query_entity(repository):
    repository.put("f1", "face", face_vec(e0=1.0), 1)
    repository.put("f2", "face", face_vec(e0=0.8, e1=0.6), 1)
    repository.put("f3", "face", face_vec(e0=0.9, e1=0.1), 1)
    results = SimilarityIndex(repository).find_similar("f1", "face", k=1)
    assert [r.id for r in results] == ["f3"]
    assert results[0].rank == 1


def test_find_similar_unknown_entity(repository):
    with pytest.raises(NotFound):
        SimilarityIndex(repository).find_similar("missing", "face")
