"""Tests for result fusion and score boosting."""

import pytest

from codesearch.models import SearchQuery
from codesearch.ranking.fusion import (
    ResultFusionEngine,
    WeightedScoreFusion,
    create_fusion_engine,
    is_documentation_file,
)

from tests.fakes import make_candidate


def _ids(candidates):
    return [c.chunk_id for c in candidates]


@pytest.fixture
def candidate_pool():
    # identical candidate sets, ranked differently by each source
    dense = [
        make_candidate("a", file_path="src/a.py", score=0.9),
        make_candidate("b", file_path="src/b.py", score=0.6),
        make_candidate("c", file_path="src/c.py", score=0.3),
    ]
    sparse = [
        make_candidate("c", file_path="src/c.py", score=0.95),
        make_candidate("b", file_path="src/b.py", score=0.5),
        make_candidate("a", file_path="src/a.py", score=0.1),
    ]
    return dense, sparse


def test_alpha_one_matches_dense_ranking(candidate_pool):
    dense, sparse = candidate_pool
    fused = WeightedScoreFusion(alpha=1.0).fuse_results(dense, sparse)
    assert _ids(fused) == ["a", "b", "c"]
    assert [c.score for c in fused] == [0.9, 0.6, 0.3]


def test_alpha_zero_matches_sparse_ranking(candidate_pool):
    dense, sparse = candidate_pool
    fused = WeightedScoreFusion(alpha=0.0).fuse_results(dense, sparse)
    assert _ids(fused) == ["c", "b", "a"]


def test_blend_uses_zero_for_missing_source():
    dense = [make_candidate("a", score=0.8)]
    sparse = [make_candidate("b", file_path="src/z.ts", score=0.5)]
    fused = WeightedScoreFusion(alpha=0.7).fuse_results(dense, sparse)

    scores = {c.chunk_id: c for c in fused}
    assert scores["a"].score == pytest.approx(0.56)
    assert scores["b"].score == pytest.approx(0.15)
    assert scores["a"].hybrid_score.dense == 0.8
    assert scores["a"].hybrid_score.sparse == 0.0
    assert scores["b"].hybrid_score.dense == 0.0
    assert scores["b"].hybrid_score.combined == pytest.approx(0.15)


def test_candidate_in_both_lists_uses_both_scores(dense_results, sparse_results):
    fused = WeightedScoreFusion(alpha=0.7).fuse_results(dense_results, sparse_results)
    shared = next(c for c in fused if c.chunk_id == "d2")
    assert shared.score == pytest.approx(0.7 * 0.8 + 0.3 * 0.6)
    assert len(fused) == 4


def test_ties_break_by_path_then_line():
    dense = [
        make_candidate("late", file_path="b.ts", start_line=1, score=0.5),
        make_candidate("second", file_path="a.ts", start_line=30, score=0.5),
        make_candidate("first", file_path="a.ts", start_line=3, score=0.5),
    ]
    fused = WeightedScoreFusion(alpha=1.0).fuse_results(dense, [make_candidate("x", score=0.0)])
    assert _ids(fused)[:3] == ["first", "second", "late"]


def test_invalid_alpha_rejected():
    with pytest.raises(ValueError):
        WeightedScoreFusion(alpha=1.5)


def test_passthrough_when_hybrid_disabled(dense_results, sparse_results):
    engine = ResultFusionEngine(alpha=0.7, enabled=False)
    combined = engine.combine(SearchQuery(text="q"), dense_results, sparse_results)
    assert _ids(combined) == ["d1", "d2", "d3"]
    assert [c.score for c in combined] == [0.9, 0.8, 0.75]
    assert combined[0].hybrid_score.sparse is None


def test_passthrough_when_query_disables_hybrid(dense_results, sparse_results):
    engine = ResultFusionEngine()
    combined = engine.combine(SearchQuery(text="q", enable_hybrid=False), dense_results, sparse_results)
    assert _ids(combined) == ["d1", "d2", "d3"]


def test_passthrough_when_sparse_empty(dense_results):
    combined = ResultFusionEngine().combine(SearchQuery(text="q"), dense_results, [])
    assert _ids(combined) == ["d1", "d2", "d3"]


def test_sparse_used_when_dense_empty(sparse_results):
    engine = ResultFusionEngine(enabled=False)
    combined = engine.combine(SearchQuery(text="q"), [], sparse_results)
    assert _ids(combined) == ["d2", "s1"]


def test_implementation_boost_orders_code_above_readme():
    code = make_candidate("code", file_path="src/foo.ts", chunk_kind="function", score=0.5)
    readme = make_candidate("readme", file_path="README.md", chunk_kind="section", score=0.5)

    boosted = ResultFusionEngine.apply_implementation_boost([readme, code])
    scores = {c.chunk_id: c.score for c in boosted}

    assert scores["code"] == pytest.approx(0.5 * 1.30 * 1.15)
    assert scores["readme"] == pytest.approx(0.5 * 0.85)
    assert scores["code"] > scores["readme"]


def test_implementation_boost_is_not_clamped():
    boosted = ResultFusionEngine.apply_implementation_boost([make_candidate("a", score=0.9)])
    assert boosted[0].score == pytest.approx(0.9 * 1.30 * 1.15)
    assert boosted[0].score > 1.0


def test_metadata_boost_is_additive_and_clamped():
    plain = make_candidate("plain", score=0.5)
    test_file = make_candidate("test", score=0.5, is_test=True)
    hot = make_candidate("hot", score=0.5, is_recently_modified=True, is_currently_open=True)
    capped = make_candidate("capped", score=0.95, is_currently_open=True)

    boosted = {c.chunk_id: c.score for c in ResultFusionEngine.apply_metadata_boost([plain, test_file, hot, capped])}

    assert boosted["plain"] == pytest.approx(0.55)
    assert boosted["test"] == pytest.approx(0.5)
    assert boosted["hot"] == pytest.approx(0.80)
    assert boosted["capped"] == 1.0


def test_rank_applies_both_boosts_and_resorts():
    engine = ResultFusionEngine(enabled=False)
    docs = make_candidate("docs", file_path="docs/guide.md", chunk_kind="section", score=0.9)
    code = make_candidate("code", file_path="src/guide.ts", chunk_kind="method", score=0.6)

    ranked = engine.rank(SearchQuery(text="guide"), [docs, code], [])

    assert _ids(ranked) == ["code", "docs"]
    assert ranked[1].score == pytest.approx(0.9 * 0.85 + 0.05)


def test_rank_without_implementation_preference():
    engine = ResultFusionEngine(enabled=False)
    docs = make_candidate("docs", file_path="docs/guide.md", chunk_kind="section", score=0.9)
    code = make_candidate("code", file_path="src/guide.ts", chunk_kind="method", score=0.6)

    ranked = engine.rank(SearchQuery(text="guide", prefer_implementation=False), [docs, code], [])

    assert _ids(ranked) == ["docs", "code"]
    assert ranked[0].score == pytest.approx(0.95)


def test_inputs_are_not_mutated(dense_results, sparse_results):
    before = [(c.chunk_id, c.score, c.hybrid_score) for c in dense_results]
    ResultFusionEngine().rank(SearchQuery(text="q"), dense_results, sparse_results)
    assert [(c.chunk_id, c.score, c.hybrid_score) for c in dense_results] == before


@pytest.mark.parametrize("path, expected", [
    ("README.md", True),
    ("docs/setup.ts", True),
    ("notes/changes.rst", True),
    ("CHANGELOG", True),
    ("src/License.ts", True),
    ("src/parser.ts", False),
    ("lib/markdown.py", False),
])
def test_is_documentation_file(path, expected):
    assert is_documentation_file(path) is expected


def test_adaptive_alpha():
    engine = create_fusion_engine(alpha=0.7, adaptive_alpha=True)
    assert engine.adaptive_alpha("how to paginate results in the api") == pytest.approx(0.8)
    assert engine.adaptive_alpha("parseConfigFile") == pytest.approx(0.5)
    assert engine.adaptive_alpha("load_settings") == pytest.approx(0.5)
    assert engine.adaptive_alpha("where are retries configured") == pytest.approx(0.7)
