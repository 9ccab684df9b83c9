"""LLM-backed reranker.

Builds a prompt listing the shortlist, asks a chat model (Anthropic messages
API over httpx, or OpenAI through the ``openai`` SDK)
for a JSON object ``{"rankedIndices": [...]}`` of zero-based candidate
indices, and maps the answer back onto the shortlist.
"""

import json
import re
from dataclasses import replace
from typing import List, Optional

import httpx
import structlog
from openai import APIError, AsyncOpenAI

from ..common.errors import RerankerError
from ..models import Candidate
from .base import Reranker, RerankResponse
from .circuit_breaker import CircuitBreaker

logger = structlog.get_logger("llm_reranker")

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def build_rerank_prompt(query: str, candidates: List[Candidate], max_results: int) -> str:
    sections = []
    for index, candidate in enumerate(candidates):
        meta = candidate.metadata
        sections.append(
            f"CANDIDATE {index}:\n"
            f"File: {candidate.file_path}\n"
            f"Type: {candidate.chunk_kind}\n"
            f"Language: {candidate.language}\n"
            f"Function: {meta.function_name or 'N/A'}\n"
            f"Class: {meta.class_name or 'N/A'}\n"
            f"Lines: {candidate.start_line}-{candidate.end_line}\n"
            f"Similarity Score: {candidate.score:.3f}\n"
            f"Is Test File: {'Yes' if meta.is_test else 'No'}\n"
            f"Code Snippet:\n```{candidate.language}\n{candidate.content}\n```\n"
        )

    return (
        "You are a code search expert. Re-rank the code search results below by "
        "their relevance to the user's query.\n\n"
        f'USER QUERY: "{query}"\n\n'
        "SEARCH CANDIDATES:\n"
        + "\n".join(sections)
        + "\nINSTRUCTIONS:\n"
        "1. Analyze each candidate's relevance to the query\n"
        "2. Consider code context, function/class names, and actual implementation\n"
        "3. Prioritize exact matches over partial matches\n"
        f"4. Include only the top {max_results} most relevant candidates, most relevant first\n"
        "5. Use the candidate numbers shown above\n\n"
        "Expected JSON format:\n"
        '{"rankedIndices": [2, 0, 4, 1], "explanation": "..."}\n\n'
        "JSON Response:"
    )


def parse_ranked_indices(text: str, candidate_count: int, max_results: int) -> List[int]:
    """Extract valid, de-duplicated indices from the model's answer."""
    match = _JSON_OBJECT.search(text)
    if not match:
        raise RerankerError("No JSON object found in reranker response")
    try:
        parsed = json.loads(match.group(0))
    except ValueError as e:
        raise RerankerError(f"Malformed reranker JSON: {e}") from e

    ranked = parsed.get("rankedIndices") if isinstance(parsed, dict) else None
    if not isinstance(ranked, list):
        raise RerankerError("Reranker response has no rankedIndices list")

    indices: List[int] = []
    for value in ranked:
        if isinstance(value, bool) or not isinstance(value, int):
            continue
        if 0 <= value < candidate_count and value not in indices:
            indices.append(value)
        if len(indices) >= max_results:
            break
    return indices


class LLMReranker(Reranker):
    """Reranks a shortlist with a chat model chosen by ``model`` name."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "claude-3-haiku-20240307",
        enabled: bool = True,
        timeout: float = 45.0,
        http_client: Optional[httpx.AsyncClient] = None,
        openai_client: Optional[AsyncOpenAI] = None
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.enabled = enabled and bool(api_key)
        if enabled and not api_key:
            logger.warning("LLM reranking enabled but no API key configured, disabling")
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker(
            name="llm_reranker",
            failure_threshold=3,
            recovery_timeout=60.0
        )
        self.openai_client = openai_client

    def is_enabled(self) -> bool:
        return self.enabled

    @property
    def provider(self) -> str:
        if "claude" in self.model:
            return "anthropic"
        if "gpt" in self.model:
            return "openai"
        raise RerankerError(f"Unsupported LLM model for reranking: {self.model}")

    def _openai(self) -> AsyncOpenAI:
        if self.openai_client is None:
            self.openai_client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self.openai_client

    async def _complete_openai(self, prompt: str) -> str:
        try:
            response = await self._openai().chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.1,
                max_tokens=1000
            )
        except APIError as e:
            raise RerankerError(f"openai API error: {e}") from e
        if not response.choices or response.choices[0].message.content is None:
            raise RerankerError("Unexpected openai response shape")
        return response.choices[0].message.content

    async def _complete_anthropic(self, prompt: str) -> str:
        body = {
            "model": self.model,
            "max_tokens": 1000,
            "temperature": 0.1,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}
        try:
            response = await self.http_client.post(ANTHROPIC_URL, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise RerankerError(f"anthropic request failed: {e}") from e
        if response.status_code != 200:
            raise RerankerError(f"anthropic API error: {response.status_code}")

        try:
            return response.json()["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise RerankerError("Unexpected anthropic response shape") from e

    async def _complete(self, prompt: str) -> str:
        if self.provider == "anthropic":
            return await self._complete_anthropic(prompt)
        return await self._complete_openai(prompt)

    async def rerank(self, query: str, candidates: List[Candidate], max_results: int) -> RerankResponse:
        if not self.enabled:
            return RerankResponse(reranked=False, results=list(candidates[:max_results]))

        prompt = build_rerank_prompt(query, candidates, max_results)
        answer = await self.circuit_breaker.call(self._complete, prompt)
        indices = parse_ranked_indices(answer, len(candidates), max_results)

        results = [
            replace(candidates[index], reranked_score=max(0.0, 1.0 - 0.1 * position))
            for position, index in enumerate(indices)
        ]
        logger.info("LLM rerank completed", candidates=len(candidates), ranked=len(results), model=self.model)
        return RerankResponse(reranked=bool(results), results=results)

    async def close(self) -> None:
        await self.http_client.aclose()
        if self.openai_client is not None:
            await self.openai_client.close()
