"""
Retriever - Context Restore

Gathers candidates from every source and synthesizes a "where was I"
narrative.

Key Components:
- Source adapters: active context, recent activity, vector search, feeds
- FusionRanker: merges tagged candidate lists (optionally reranked)
- SearchBudget: decides when a fruitless search should stop
- ContextSynthesizer: fan-out, dedup, fusion and rendering

Pipeline:
1. Fan out to all sources concurrently (failures become "absent")
2. Record each outcome in the search budget
3. Deduplicate and fuse
4. Render the narrative, or a negative response when nothing was found
"""

from .adapters import (
    SourceAdapter,
    SourceRequest,
    ContextStoreAdapter,
    RecentActivityAdapter,
    VectorSearchAdapter,
    LocalVectorIndex,
    StaticFeedAdapter,
)
from .reranker import CrossEncoderReranker
from .fusion import FusionRanker
from .search_budget import (
    ResultQuality,
    SearchAttempt,
    SearchBudget,
    Termination,
    score_result_quality,
)
from .synthesizer import ContextSynthesizer, BootResult

__all__ = [
    "SourceAdapter",
    "SourceRequest",
    "ContextStoreAdapter",
    "RecentActivityAdapter",
    "VectorSearchAdapter",
    "LocalVectorIndex",
    "StaticFeedAdapter",
    "CrossEncoderReranker",
    "FusionRanker",
    "ResultQuality",
    "SearchAttempt",
    "SearchBudget",
    "Termination",
    "score_result_quality",
    "ContextSynthesizer",
    "BootResult",
]
