"""
Cross-Encoder Reranker

Client for a Cohere-compatible /v1/rerank endpoint. Scores (query, document)
pairs jointly, which ranks heterogeneous sources better than comparing their
independent similarity scores.
"""

import logging
from typing import List, Optional, Sequence

import httpx

from ..common.errors import RerankError

logger = logging.getLogger("ctxsynth.retriever.reranker")

DEFAULT_MODEL = "rerank-english-v3.0"
DEFAULT_BASE_URL = "https://api.cohere.com"


class CrossEncoderReranker:
    """
    Async rerank client.

    The HTTP client is created lazily on first use.

    Usage:
        reranker = CrossEncoderReranker(api_key="...")
        scores = await reranker.rerank("auth decision", ["doc a", "doc b"], top_n=10)
        await reranker.close()
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def rerank(self, query: str, documents: Sequence[str], top_n: int = 10) -> List[float]:
        """
        Score documents against the query.

        Returns:
            Scores in [0, 1], index-aligned with documents. Documents the
            service did not return in its top_n score 0.0.

        Raises:
            RerankError: If the request fails or the response is malformed
        """
        if not documents:
            return []

        payload = {
            "model": self.model,
            "query": query,
            "documents": list(documents),
            "top_n": min(top_n, len(documents)),
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        client = self._ensure_client()
        try:
            response = await client.post(f"{self.base_url}/v1/rerank", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise RerankError(f"Rerank request failed: {e}") from e
        except ValueError as e:
            raise RerankError(f"Rerank response is not JSON: {e}") from e

        scores = [0.0] * len(documents)
        try:
            for item in data.get("results", []):
                index = int(item["index"])
                if 0 <= index < len(scores):
                    score = float(item["relevance_score"])
                    scores[index] = min(max(score, 0.0), 1.0)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RerankError(f"Malformed rerank response: {e}") from e

        logger.debug("Reranked %d documents for %r", len(documents), query)
        return scores
