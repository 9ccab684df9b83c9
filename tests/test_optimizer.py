"""Tests for post-fusion reshaping."""

import pytest

from codesearch.models import SearchQuery
from codesearch.ranking.optimizer import ContextOptimizer, OptimizationPreferences

from tests.fakes import make_candidate


def _ids(candidates):
    return [c.chunk_id for c in candidates]


def test_boost_by_chunk_kind_is_clamped():
    candidates = [
        make_candidate("f", chunk_kind="function", score=0.95),
        make_candidate("c", chunk_kind="class", score=0.5),
    ]
    boosted = ContextOptimizer.boost_by_chunk_kind(candidates, "function", 0.1)
    assert boosted[0].score == 1.0
    assert boosted[1].score == 0.5
    assert candidates[0].score == 0.95


def test_diversify_caps_each_language_group():
    candidates = (
        [make_candidate(f"py{i}", language="python", score=0.9 - i * 0.01) for i in range(6)]
        + [make_candidate(f"go{i}", language="go", score=0.5 - i * 0.01) for i in range(2)]
    )
    diversified = ContextOptimizer.diversify_by_language(candidates)
    # 8 candidates // 2 languages = 4 per language
    assert _ids(diversified) == ["py0", "py1", "py2", "py3", "go0", "go1"]


def test_diversify_keeps_at_least_two_per_language():
    candidates = [make_candidate(f"l{i}", language=f"lang{i % 5}") for i in range(10)]
    candidates += [make_candidate("extra", language="lang0")]
    diversified = ContextOptimizer.diversify_by_language(candidates)
    # 11 // 5 = 2, and lang0 has three members
    assert len(diversified) == 10
    assert "extra" not in _ids(diversified)


def test_limit_per_file_keeps_first_members():
    candidates = [
        make_candidate("a1", file_path="a.ts"),
        make_candidate("b1", file_path="b.ts"),
        make_candidate("a2", file_path="a.ts"),
        make_candidate("a3", file_path="a.ts"),
    ]
    assert _ids(ContextOptimizer.limit_per_file(candidates, 2)) == ["a1", "b1", "a2"]


def test_optimize_prefers_functions_and_resorts():
    candidates = [
        make_candidate("cls", file_path="a.ts", chunk_kind="class", score=0.8),
        make_candidate("fn", file_path="b.ts", chunk_kind="function", score=0.75),
    ]
    preferences = OptimizationPreferences.from_query(SearchQuery(text="q", prefer_functions=True))
    optimized = ContextOptimizer().optimize(candidates, preferences)
    assert _ids(optimized) == ["fn", "cls"]
    assert optimized[0].score == pytest.approx(0.85)


def test_optimize_applies_per_file_cap():
    candidates = [make_candidate(f"a{i}", file_path="a.ts", score=0.9 - i * 0.1) for i in range(5)]
    preferences = OptimizationPreferences.from_query(SearchQuery(text="q", max_per_file=3))
    assert _ids(ContextOptimizer().optimize(candidates, preferences)) == ["a0", "a1", "a2"]


def test_language_filter_disables_diversification():
    preferences = OptimizationPreferences.from_query(SearchQuery(text="q", language="python"))
    assert preferences.diversify_languages is False
    assert OptimizationPreferences.from_query(SearchQuery(text="q")).diversify_languages is True


def test_chunk_kind_filter_implies_preference():
    preferences = OptimizationPreferences.from_query(SearchQuery(text="q", chunk_kind="class"))
    assert preferences.prefer_classes is True
    assert preferences.prefer_functions is False
