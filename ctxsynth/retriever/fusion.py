"""
Fusion Ranker

Merges candidates from several tagged sources into one ranked list.

With a reranker every candidate is re-scored against the query, which puts
all sources on one scale. Without one, each candidate keeps its native
score; those are not normalized across sources, so fallback ordering is only
as comparable as the sources' own scores.
"""

import logging
from typing import Dict, List, Optional, Protocol, Sequence

from ..common.errors import RerankError
from ..common.schemas import Candidate, RankedResult

logger = logging.getLogger("ctxsynth.retriever.fusion")


class Reranker(Protocol):
    async def rerank(self, query: str, documents: Sequence[str], top_n: int = 10) -> List[float]:
        ...


class FusionRanker:
    """
    Fuse tagged candidate lists.

    Deduplication is not done here; callers pass unique candidates.
    """

    def __init__(self, reranker: Optional[Reranker] = None):
        self._reranker = reranker

    @property
    def has_reranker(self) -> bool:
        return self._reranker is not None

    async def fuse(
        self,
        query: str,
        sources_by_tag: Dict[str, Sequence[Candidate]],
        top_n: int = 10,
    ) -> List[RankedResult]:
        """
        Args:
            query: Query the candidates answer
            sources_by_tag: {source tag: candidates}; flattened in insertion order
            top_n: Maximum results

        Returns:
            At most top_n results, sorted by score descending (stable)
        """
        flattened = [
            (tag, candidate)
            for tag, candidates in sources_by_tag.items()
            for candidate in candidates
        ]
        if not flattened or top_n <= 0:
            return []

        scores = await self._score(query, [c for _, c in flattened], top_n)

        ranked = [
            RankedResult(
                text=candidate.text,
                source_tag=tag,
                score=score,
                metadata=candidate.metadata,
            )
            for (tag, candidate), score in zip(flattened, scores)
        ]
        ranked.sort(key=lambda r: r.score, reverse=True)
        return ranked[:top_n]

    async def _score(self, query: str, candidates: List[Candidate], top_n: int) -> List[float]:
        native = [c.metadata.score for c in candidates]
        if self._reranker is None:
            return native

        try:
            scores = await self._reranker.rerank(query, [c.text for c in candidates], top_n)
        except RerankError as e:
            logger.warning("Reranking failed, using native scores: %s", e)
            return native

        if len(scores) != len(candidates):
            logger.warning(
                "Reranker returned %d scores for %d documents, using native scores",
                len(scores), len(candidates),
            )
            return native
        return list(scores)
