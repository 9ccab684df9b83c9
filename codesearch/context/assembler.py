"""Token-budgeted packaging of ranked candidates into code references.

Consecutive candidates from the same file that sit close together are merged
into one reference. References are accepted in rank order until the next one
would overflow the budget; nothing after that point is included, not even
partially.
"""

import math
from typing import Any, Dict, List

import structlog

from ..models import Candidate, CodeReference, ContextWindow

logger = structlog.get_logger("context_assembler")

GAP_MARKER = "// ... (gap) ..."
SNIPPET_SEPARATOR = "\n\n"
MAX_SUMMARY_KINDS = 3


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'s' if count != 1 else ''}"


class ContextAssembler:
    """Groups, merges and budgets candidates.

    Parameters
    - chars_per_token: Characters assumed per token when estimating cost
    - group_gap_lines: Max line gap for merging neighbouring candidates
    - snippet_gap_lines: Gaps wider than this get a marker in merged text
    """

    def __init__(self, chars_per_token: float = 3.5, group_gap_lines: int = 10, snippet_gap_lines: int = 3):
        self.chars_per_token = max(1.0, chars_per_token)
        self.group_gap_lines = group_gap_lines
        self.snippet_gap_lines = snippet_gap_lines

    def estimate_tokens(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)

    def group_candidates(self, candidates: List[Candidate]) -> List[List[Candidate]]:
        """Split the ranking into runs of same-file, line-adjacent candidates."""
        groups: List[List[Candidate]] = []
        group_end = 0
        for candidate in candidates:
            if groups:
                current = groups[-1]
                gap = candidate.start_line - group_end
                if candidate.file_path == current[0].file_path and 0 <= gap <= self.group_gap_lines:
                    current.append(candidate)
                    group_end = max(group_end, candidate.end_line)
                    continue
            groups.append([candidate])
            group_end = candidate.end_line
        return groups

    def merge_group(self, group: List[Candidate]) -> CodeReference:
        members = sorted(group, key=lambda c: c.start_line)
        primary = max(group, key=lambda c: c.score)

        parts: List[str] = []
        previous_end = None
        for member in members:
            if previous_end is not None and member.start_line - previous_end > self.snippet_gap_lines:
                parts.append(GAP_MARKER)
            parts.append(member.content)
            previous_end = member.end_line

        metadata: Dict[str, Any] = {"is_test": primary.metadata.is_test}
        if primary.metadata.function_name:
            metadata["function_name"] = primary.metadata.function_name
        if primary.metadata.class_name:
            metadata["class_name"] = primary.metadata.class_name
        if primary.metadata.complexity:
            metadata["complexity"] = primary.metadata.complexity

        return CodeReference(
            path=members[0].file_path,
            start_line=members[0].start_line,
            end_line=members[-1].end_line,
            merged_text=SNIPPET_SEPARATOR.join(parts),
            average_score=sum(c.score for c in group) / len(group),
            dominant_chunk_kind=primary.chunk_kind,
            language=primary.language,
            metadata=metadata,
            member_ids=[c.chunk_id for c in members],
        )

    @staticmethod
    def truncation_summary(omitted: List[Candidate]) -> str:
        """E.g. ``"7 additional results truncated from 4 files (function, class, ...)"``."""
        files = {c.file_path for c in omitted}
        kinds: List[str] = []
        for candidate in omitted:
            if candidate.chunk_kind not in kinds:
                kinds.append(candidate.chunk_kind)

        summary = f"{_plural(len(omitted), 'additional result')} truncated from {_plural(len(files), 'file')}"
        if kinds:
            listed = ", ".join(kinds[:MAX_SUMMARY_KINDS])
            if len(kinds) > MAX_SUMMARY_KINDS:
                listed += ", ..."
            summary += f" ({listed})"
        return summary

    def assemble(self, candidates: List[Candidate], token_budget: int) -> ContextWindow:
        window = ContextWindow(token_budget=token_budget)
        groups = self.group_candidates(candidates)

        for index, group in enumerate(groups):
            reference = self.merge_group(group)
            cost = self.estimate_tokens(reference.merged_text)
            if window.tokens_used + cost > token_budget:
                omitted = [c for rest in groups[index:] for c in rest]
                window.truncated = True
                window.summary = self.truncation_summary(omitted)
                break
            window.references.append(reference)
            window.tokens_used += cost

        logger.info(
            "Assembled context window",
            candidates=len(candidates),
            references=len(window.references),
            tokens_used=window.tokens_used,
            token_budget=token_budget,
            truncated=window.truncated
        )
        return window
