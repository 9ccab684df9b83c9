"""Voyage AI embedding client."""

from typing import List, Optional

import httpx
import structlog

from ..common.errors import EmbeddingServiceError
from .base import EmbeddingProvider
from .circuit_breaker import CircuitBreaker
from .retry import call_with_retry

logger = structlog.get_logger("embedding_client")

MODEL_DIMENSIONS = {
    "voyage-code-3": 1024,
    "voyage-3.5": 1024,
    "voyage-3-large": 1024,
    "voyage-code-2": 1536,
    "voyage-2": 1024,
    "voyage-large-2": 1536,
    "voyage-3": 1024,
}


class VoyageEmbeddingClient(EmbeddingProvider):
    """Calls ``POST {base_url}/embeddings`` with retry and a circuit breaker."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.voyageai.com/v1",
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = CircuitBreaker(
            name="embedding_service",
            failure_threshold=5,
            recovery_timeout=30.0
        )

    @staticmethod
    def embedding_dimension(model: str) -> Optional[int]:
        """Default output dimension of a known Voyage model, ``None`` otherwise."""
        return MODEL_DIMENSIONS.get(model)

    async def _request(self, text: str, model: str, mode: str) -> List[float]:
        try:
            response = await self.http_client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "input": text,
                    "model": model,
                    "input_type": mode,
                    "truncation": True
                }
            )
        except httpx.HTTPError as e:
            raise EmbeddingServiceError(f"Voyage AI request failed: {e}") from e

        if response.status_code != 200:
            try:
                detail = response.json().get("error", {}).get("message") or response.text
            except ValueError:
                detail = response.text
            raise EmbeddingServiceError(f"Voyage AI API error {response.status_code}: {detail}")

        data = response.json().get("data") or []
        if not data or not data[0].get("embedding"):
            raise EmbeddingServiceError("No embeddings returned from Voyage AI")

        vector = data[0]["embedding"]
        expected = self.embedding_dimension(model)
        if expected is not None and len(vector) != expected:
            raise EmbeddingServiceError(
                f"Voyage AI returned a {len(vector)}-dimension vector, {model} produces {expected}"
            )
        return vector

    async def generate_embedding(self, text: str, model: str, mode: str = "query") -> List[float]:
        vector = await call_with_retry(
            lambda: self.circuit_breaker.call(self._request, text, model, mode),
            operation_name="embedding_request",
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay
        )
        logger.debug("Generated embedding", model=model, mode=mode, dimension=len(vector))
        return vector

    async def close(self) -> None:
        await self.http_client.aclose()
