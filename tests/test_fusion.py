import pytest

from facesearch.fusion import (
    QueryFusionEngine, QueryIntent, SignalType, fusion_stats, merge, normalize_keyword_score,
)
from facesearch.similarity import ScoredCandidate


def test_merge_weighted_sum():
    results = merge({"p1": 0.9}, {"p1": 0.5, "p2": 0.8}, 0.6, 0.4)
    assert [r.entity_id for r in results] == ["p1", "p2"]
    assert results[0].score == pytest.approx(0.74)
    assert results[1].score == pytest.approx(0.32)
    assert results[0].sources == {SignalType.KEYWORD, SignalType.SEMANTIC}
    assert results[1].sources == {SignalType.SEMANTIC}


def test_merge_records_contributions():
    result = merge({"p1": 0.9}, {"p1": 0.5}, 0.6, 0.4)[0]
    assert result.contribution(SignalType.KEYWORD) == pytest.approx(0.54)
    assert result.contribution(SignalType.SEMANTIC) == pytest.approx(0.2)


def test_merge_ties_break_by_id():
    results = merge({"b": 0.5, "a": 0.5}, {}, 1.0, 1.0)
    assert [r.entity_id for r in results] == ["a", "b"]


def test_merge_with_empty_inputs():
    assert merge({}, {}) == []
    assert merge(None, [("x", 0.4)])[0].score == pytest.approx(0.16)


def test_merge_accepts_scored_candidates():
    semantic = [ScoredCandidate("p1", 0.5, 1), ScoredCandidate("p2", 0.25, 2)]
    results = merge({}, semantic, 0.6, 0.4)
    assert [r.entity_id for r in results] == ["p1", "p2"]


def test_merge_is_deterministic():
    keyword = {f"k{i}": (i % 3) / 3 for i in range(20)}
    semantic = {f"k{i}": (i % 4) / 4 for i in range(10, 30)}
    assert merge(keyword, semantic) == merge(dict(reversed(list(keyword.items()))), semantic)


def test_normalize_keyword_score():
    assert normalize_keyword_score(80) == pytest.approx(0.8)
    assert normalize_keyword_score(250) == 1.0
    assert normalize_keyword_score(-5) == 0.0


def test_intent_selects_weights():
    engine = QueryFusionEngine()
    assert engine.weights_for(None) == (0.6, 0.4)
    assert engine.weights_for(QueryIntent("semantic")) == (0.2, 0.8)
    assert engine.weights_for(QueryIntent("people", 0.9)) == (0.5, 0.5)
    assert engine.weights_for(QueryIntent("unknown")) == (0.6, 0.4)


def test_search_filters_truncates_and_ranks():
    engine = QueryFusionEngine()
    results = engine.search({"a": 1.0, "b": 0.5, "c": 0.1}, {"a": 1.0, "d": 0.9},
                            intent=QueryIntent("keyword"), min_score=0.2, limit=2)
    assert [r.entity_id for r in results] == ["a", "b"]
    assert [r.rank for r in results] == [1, 2]
    assert results[0].score == pytest.approx(1.0)


def test_reorder_by_single_signal():
    engine = QueryFusionEngine()
    results = engine.search({"p1": 0.9}, {"p1": 0.5, "p2": 0.8})
    by_semantic = engine.reorder(results, "semantic")
    assert [r.entity_id for r in by_semantic] == ["p2", "p1"]
    assert by_semantic[0].rank == 1
    assert [r.entity_id for r in engine.reorder(by_semantic, "keyword")] == ["p1", "p2"]
    assert [r.entity_id for r in engine.reorder(by_semantic)] == ["p1", "p2"]
    with pytest.raises(ValueError):
        engine.reorder(results, "date")


def test_fusion_stats():
    stats = fusion_stats(merge({"p1": 0.9, "p3": 0.1}, {"p1": 0.5, "p2": 0.8}))
    assert stats.total == 3
    assert stats.with_both_sources == 1
    assert stats.keyword_only == 1
    assert stats.semantic_only == 1
