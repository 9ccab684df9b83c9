"""Display helpers applied to the final result list.

``enhance_snippet`` trims long chunks down to the lines that mention the
query, ``describe_chunk`` renders the location line shown next to a result.
Both leave ``content`` untouched; context assembly always works from the
full chunk text.
"""

import re
from dataclasses import replace
from typing import List

from ..models import Candidate

MAX_SNIPPET_LINES = 8


def enhance_snippet(content: str, query_text: str, max_lines: int = MAX_SNIPPET_LINES) -> str:
    """Keep the ``max_lines`` lines matching most query terms, in source order.

    A line scores one point per query term it contains
    (case-insensitive substring). Ties keep the earlier line.
    """
    lines = content.split("\n")
    if len(lines) <= max_lines:
        return content

    terms = [t for t in re.split(r"\s+", query_text.lower()) if t]
    scored = []
    for index, line in enumerate(lines):
        lowered = line.lower()
        scored.append((sum(1 for term in terms if term in lowered), index))

    top = sorted(scored, key=lambda item: (-item[0], item[1]))[:max_lines]
    return "\n".join(lines[index] for _, index in sorted(top, key=lambda item: item[1]))


def describe_chunk(candidate: Candidate) -> str:
    """Location line, e.g. ``File: src/app.ts | Lines: 1-10 | Language: typescript | Type: function``."""
    parts = [
        f"File: {candidate.file_path}",
        f"Lines: {candidate.start_line}-{candidate.end_line}",
        f"Language: {candidate.language}",
        f"Type: {candidate.chunk_kind}",
    ]
    if candidate.metadata.function_name:
        parts.append(f"Function: {candidate.metadata.function_name}")
    if candidate.metadata.class_name:
        parts.append(f"Class: {candidate.metadata.class_name}")
    return " | ".join(parts)


def post_process(candidates: List[Candidate], query_text: str) -> List[Candidate]:
    """Attach a snippet and a context line to each candidate, keeping the order."""
    return [
        replace(
            candidate,
            snippet=enhance_snippet(candidate.content, query_text),
            context=candidate.context or describe_chunk(candidate),
        )
        for candidate in candidates
    ]
