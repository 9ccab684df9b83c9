"""Optional rerank stage.

Reranking is a best-effort refinement: every failure mode (disabled, budget
spent, reranker error, timeout) returns the incoming order with
``reranked=False`` and is logged as a degradation, never raised.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List, Optional, Union

import structlog

from ..clients.base import Reranker
from ..common.metrics import MetricsCollector
from ..models import Candidate, Deadline, RerankOutcome, SearchQuery

logger = structlog.get_logger("rerank")

RERANK_TOP_N = 10
POSITION_SCORE_STEP = 0.1


class RerankOrchestrator:
    """Sends the head of the ranking to an external reranker and splices the answer back."""

    def __init__(
        self,
        reranker: Optional[Reranker],
        enabled: bool = True,
        top_n: int = RERANK_TOP_N,
        metrics: Optional[MetricsCollector] = None
    ):
        self.reranker = reranker
        self.enabled = enabled
        self.top_n = top_n
        self.metrics = metrics

    def _skip_reason(self, query: SearchQuery, candidates: List[Candidate], deadline: Deadline) -> Optional[str]:
        if not self.enabled or query.enable_reranking is False:
            return "disabled"
        if self.reranker is None or not self.reranker.is_enabled():
            return "reranker_unavailable"
        if len(candidates) < 2:
            return "too_few_candidates"
        if deadline.remaining() <= 0:
            return "budget_exhausted"
        return None

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_rerank(outcome)

    async def rerank(self, query: SearchQuery, candidates: List[Candidate], deadline: Deadline) -> RerankOutcome:
        reason = self._skip_reason(query, candidates, deadline)
        if reason is not None:
            if reason != "disabled":
                logger.warning("Reranking skipped", reason=reason, candidates=len(candidates))
            self._record("skipped")
            return RerankOutcome(results=list(candidates), reranked=False, reason=reason)

        shortlist = candidates[:self.top_n]
        max_results = min(query.limit, self.top_n)
        timeout = deadline.remaining()

        try:
            response = await asyncio.wait_for(
                self.reranker.rerank(query.text, shortlist, max_results),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Reranking timed out, keeping original order",
                timeout_s=round(timeout, 3),
                elapsed_s=round(deadline.elapsed(), 3)
            )
            self._record("failed")
            return RerankOutcome(results=list(candidates), reranked=False, reason="timeout")
        except Exception as e:
            logger.warning("Reranking failed, keeping original order", error=str(e))
            self._record("failed")
            return RerankOutcome(results=list(candidates), reranked=False, reason="error")

        if not response.reranked or not response.results:
            logger.warning("Reranker declined to rerank", returned=len(response.results))
            self._record("skipped")
            return RerankOutcome(results=list(candidates), reranked=False, reason="not_reranked")

        try:
            results = self._splice(candidates, response.results)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Reranker returned malformed results, keeping original order", error=str(e))
            self._record("failed")
            return RerankOutcome(results=list(candidates), reranked=False, reason="error")

        self._record("applied")
        logger.info("Reranking applied", shortlist=len(shortlist), returned=len(response.results))
        return RerankOutcome(results=results, reranked=True)

    @staticmethod
    def _splice(
        candidates: List[Candidate],
        returned: List[Union[Candidate, Dict]]
    ) -> List[Candidate]:
        """Returned entries first, in returned order, then the untouched rest."""
        local: Dict[str, Candidate] = {}
        for candidate in candidates:
            local.setdefault(candidate.chunk_id, candidate)

        placed = set()
        spliced: List[Candidate] = []
        for item in returned:
            if isinstance(item, Candidate):
                chunk_id = item.chunk_id
                fallback = item
                reported = item.reranked_score
            else:
                chunk_id = str(item.get("chunk_id") or item.get("chunkId") or item.get("id") or "")
                fallback = None
                reported = item.get("reranked_score", item.get("rerankedScore"))

            if chunk_id in placed:
                continue

            base = local.get(chunk_id)
            if base is None:
                base = fallback if fallback is not None else Candidate.from_payload(item)
            if reported is None:
                reported = max(0.0, 1.0 - POSITION_SCORE_STEP * len(spliced))
            spliced.append(replace(base, reranked_score=float(reported)))
            placed.add(chunk_id)

        spliced.extend(c for c in candidates if c.chunk_id not in placed)
        return spliced
