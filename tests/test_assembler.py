"""Tests for token-budgeted context assembly."""

import math

import pytest

from codesearch.context.assembler import GAP_MARKER, ContextAssembler

from tests.fakes import make_candidate


@pytest.fixture
def assembler():
    return ContextAssembler()


def test_grouping_example(assembler):
    candidates = [
        make_candidate("first", file_path="a.ts", start_line=10, end_line=20, score=0.9),
        make_candidate("second", file_path="a.ts", start_line=25, end_line=40, score=0.7),
        make_candidate("third", file_path="a.ts", start_line=60, end_line=70, score=0.6),
    ]
    window = assembler.assemble(candidates, token_budget=10_000)

    assert len(window.references) == 2
    merged, separate = window.references
    assert (merged.start_line, merged.end_line) == (10, 40)
    assert merged.member_ids == ["first", "second"]
    assert merged.average_score == pytest.approx(0.8)
    assert (separate.start_line, separate.end_line) == (60, 70)
    assert window.truncated is False
    assert window.summary is None


def test_gap_marker_between_distant_members(assembler):
    near = [
        make_candidate("a", file_path="a.ts", start_line=1, end_line=10, content="AAA"),
        make_candidate("b", file_path="a.ts", start_line=12, end_line=20, content="BBB"),
    ]
    far = [
        make_candidate("a", file_path="a.ts", start_line=1, end_line=10, content="AAA"),
        make_candidate("b", file_path="a.ts", start_line=18, end_line=20, content="BBB"),
    ]
    assert assembler.merge_group(near).merged_text == "AAA\n\nBBB"
    assert assembler.merge_group(far).merged_text == f"AAA\n\n{GAP_MARKER}\n\nBBB"
    assert "... (gap) ..." in GAP_MARKER


def test_members_are_merged_in_line_order(assembler):
    group = [
        make_candidate("later", file_path="a.ts", start_line=15, end_line=20, content="LATER", score=0.4),
        make_candidate("earlier", file_path="a.ts", start_line=1, end_line=12, content="EARLIER",
                       score=0.9, chunk_kind="class", language="tsx", class_name="Widget"),
    ]
    reference = assembler.merge_group(group)
    assert reference.merged_text.startswith("EARLIER")
    assert reference.dominant_chunk_kind == "class"
    assert reference.language == "tsx"
    assert reference.metadata["class_name"] == "Widget"
    assert reference.member_ids == ["earlier", "later"]


def test_different_files_and_backwards_lines_do_not_group(assembler):
    candidates = [
        make_candidate("a", file_path="a.ts", start_line=50, end_line=60),
        make_candidate("b", file_path="b.ts", start_line=61, end_line=70),
        make_candidate("c", file_path="b.ts", start_line=10, end_line=20),
    ]
    assert len(assembler.group_candidates(candidates)) == 3


def test_token_cost_estimate(assembler):
    assert assembler.estimate_tokens("x" * 7) == 2
    assert assembler.estimate_tokens("x" * 8) == 3
    assert assembler.estimate_tokens("") == 0


def test_budget_is_respected_and_truncation_summarized(assembler):
    candidates = [
        make_candidate(f"c{i}", file_path=f"src/f{i}.ts", start_line=1, end_line=10,
                       content="x" * 35, chunk_kind=kind)
        for i, kind in enumerate(["function", "class", "method", "interface", "function"])
    ]
    window = assembler.assemble(candidates, token_budget=25)

    assert window.tokens_used <= window.token_budget
    assert window.tokens_used == 20
    assert len(window.references) == 2
    assert window.truncated is True
    assert window.summary == "3 additional results truncated from 3 files (method, interface, function)"


def test_summary_lists_at_most_three_kinds():
    omitted = [
        make_candidate("a", file_path="a.ts", chunk_kind="function"),
        make_candidate("b", file_path="a.ts", chunk_kind="class"),
        make_candidate("c", file_path="b.ts", chunk_kind="method"),
        make_candidate("d", file_path="b.ts", chunk_kind="interface"),
    ]
    summary = ContextAssembler.truncation_summary(omitted)
    assert summary == "4 additional results truncated from 2 files (function, class, method, ...)"
    assert ContextAssembler.truncation_summary(omitted[:1]) == \
        "1 additional result truncated from 1 file (function)"


def test_stops_at_first_group_that_does_not_fit(assembler):
    candidates = [
        make_candidate("big", file_path="a.ts", content="x" * 350),
        make_candidate("small", file_path="b.ts", content="x" * 7),
    ]
    window = assembler.assemble(candidates, token_budget=50)

    assert window.references == []
    assert window.tokens_used == 0
    assert window.truncated is True
    assert window.summary.startswith("2 additional results")


def test_everything_fits(assembler):
    candidates = [make_candidate(f"c{i}", file_path=f"f{i}.ts", content="abc") for i in range(3)]
    window = assembler.assemble(candidates, token_budget=math.ceil(3 / 3.5) * 3)
    assert len(window.references) == 3
    assert window.truncated is False
