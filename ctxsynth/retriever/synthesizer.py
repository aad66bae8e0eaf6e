"""
Context Synthesizer

Top-level "brain boot": fans out to every configured source, deduplicates,
ranks and renders a deterministic narrative of where the user left off.

Pipeline:
1. since = now - lookback_days
2. Concurrent fan-out; each source call is isolated (failure -> absent)
   - active context (project-filtered, backfilled unfiltered)
   - vector similarity (same backfill)
   - recent activity (never project-filtered)
   - auxiliary feeds (cached per adapter)
3. Every source outcome is recorded in a per-boot SearchBudget
4. Active context is deduplicated against vector results
5. Fusion: with a reranker everything is fused and recent activity folds in;
   without one only active context and vector results are ranked, on native
   scores, and recent activity stays a separate list
6. Narrative: header -> auxiliary sections -> ranked context -> recent activity
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from ..common.cache import TTLCache
from ..common.config import BootConfig, BudgetConfig
from ..common.schemas import Candidate, RankedResult
from ..common.text import content_key, smart_truncate
from .adapters import SourceAdapter, SourceRequest
from .fusion import FusionRanker
from .search_budget import SearchAttempt, SearchBudget, Termination, score_result_quality

logger = logging.getLogger("ctxsynth.retriever.synthesizer")

RANKED_DISPLAY_LIMIT = 5
RECENT_DISPLAY_LIMIT = 10
RECENT_PREVIEW_LENGTH = 100
CHARS_PER_TOKEN = 4


@dataclass
class BootResult:
    """Output of one boot"""
    narrative: str
    ranked_context: List[RankedResult] = field(default_factory=list)
    recent_activity: List[Candidate] = field(default_factory=list)
    auxiliary: Dict[str, List[Candidate]] = field(default_factory=dict)
    termination: Optional[Termination] = None  # only set on the negative narrative

    @property
    def is_negative(self) -> bool:
        """True when nothing was found and the budget stopped the search"""
        return bool(self.termination and self.termination.stop) and not (
            self.ranked_context or self.recent_activity or any(self.auxiliary.values())
        )


def _normalize_timestamp(value: str) -> str:
    """ISO timestamps compared in UTC so both tiers produce the same key"""
    if not value:
        return ""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def dedup_key(candidate: Candidate) -> str:
    """(conversation, timestamp, content prefix) identity of a candidate"""
    metadata = candidate.metadata
    return content_key(
        metadata.conversation,
        _normalize_timestamp(metadata.timestamp),
        candidate.text,
    )


def _display_timestamp(value: str) -> str:
    if not value:
        return "unknown time"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M")


def _estimate_tokens(candidates: Sequence[Candidate]) -> int:
    return sum(len(c.text) for c in candidates) // CHARS_PER_TOKEN


class ContextSynthesizer:
    """
    Orchestrates one boot across all sources.

    Usage:
        synth = ContextSynthesizer(
            store=ContextStoreAdapter(context_store),
            vector=VectorSearchAdapter(endpoint),
            recent=RecentActivityAdapter(durable),
            fusion=FusionRanker(reranker),
        )
        result = await synth.boot("auth refactor", project="evna")
        print(result.narrative)
    """

    def __init__(
        self,
        store: Optional[SourceAdapter] = None,
        vector: Optional[SourceAdapter] = None,
        recent: Optional[SourceAdapter] = None,
        auxiliaries: Sequence[SourceAdapter] = (),
        fusion: Optional[FusionRanker] = None,
        budget_factory: Optional[Callable[[str], SearchBudget]] = None,
        aux_cache: Optional[TTLCache] = None,
        config: Optional[BootConfig] = None,
        budget_config: Optional[BudgetConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or BootConfig()
        self._budget_config = budget_config or BudgetConfig()
        self._store = store
        self._vector = vector
        self._recent = recent
        self._auxiliaries = list(auxiliaries)
        self._fusion = fusion or FusionRanker()
        self._budget_factory = budget_factory or self._default_budget
        self._aux_cache = aux_cache if aux_cache is not None else TTLCache(
            self._config.aux_cache_ttl_seconds
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def aux_cache(self) -> TTLCache:
        return self._aux_cache

    def _default_budget(self, query: str) -> SearchBudget:
        return SearchBudget(
            query,
            token_cap=self._budget_config.token_cap,
            strike_count=self._budget_config.strike_count,
        )

    # ------------------------------------------------------------------
    # Boot
    # ------------------------------------------------------------------

    async def boot(
        self,
        query: str,
        project: Optional[str] = None,
        lookback_days: Optional[int] = None,
        max_results: Optional[int] = None,
    ) -> BootResult:
        """
        Restore context for a query.

        Args:
            query: What the user is about to work on
            project: Soft preference; never excludes other projects entirely
            lookback_days: Time window (default from config, 7)
            max_results: Ranked results to keep (default from config, 10)

        Returns:
            BootResult. "Nothing found" is a negative narrative, not an error.
        """
        lookback_days = lookback_days if lookback_days is not None else self._config.lookback_days
        max_results = max_results if max_results is not None else self._config.max_results

        now = self._clock()
        since = now - timedelta(days=lookback_days)
        request = SourceRequest(query=query, limit=max_results, project=project, since=since)
        recent_request = SourceRequest(
            query=query, limit=self._config.recent_limit, project=None, since=since
        )

        store_out, vector_out, recent_out, *aux_outs = await asyncio.gather(
            self._call(self._store, request, backfill=True),
            self._call(self._vector, request, backfill=True),
            self._call(self._recent, recent_request),
            *(self._call_cached(adapter, request) for adapter in self._auxiliaries),
        )

        budget = self._budget_factory(query)
        outcomes = [
            (self._store, store_out),
            (self._vector, vector_out),
            (self._recent, recent_out),
            *zip(self._auxiliaries, aux_outs),
        ]
        for adapter, candidates in outcomes:
            if adapter is not None:
                self._record(budget, adapter.name, candidates)

        store_cands = store_out or []
        vector_cands = vector_out or []
        recent_cands = recent_out or []
        auxiliary = {
            adapter.name: cands or [] for adapter, cands in zip(self._auxiliaries, aux_outs)
        }

        termination = budget.should_terminate()
        found_any = any([store_cands, vector_cands, recent_cands, *auxiliary.values()])
        if termination.stop and not found_any:
            return BootResult(
                narrative=budget.build_negative_response(),
                termination=termination,
            )

        # Vector results win ties against active context
        seen = {dedup_key(c) for c in vector_cands}
        store_cands = self._unique(store_cands, seen)

        sources: Dict[str, List[Candidate]] = {}
        if self._store is not None:
            sources[self._store.name] = store_cands
        if self._vector is not None:
            sources[self._vector.name] = vector_cands

        recent_activity = recent_cands
        if self._fusion.has_reranker:
            for adapter in self._auxiliaries:
                sources[adapter.name] = self._unique(auxiliary[adapter.name], seen)
            if self._recent is not None:
                sources[self._recent.name] = self._unique(recent_cands, seen)
            recent_activity = []

        ranked = await self._fusion.fuse(query, sources, max_results)

        narrative = self.render_narrative(
            query=query,
            project=project,
            lookback_days=lookback_days,
            ranked=ranked,
            recent=recent_activity,
            auxiliary=auxiliary,
            now=now,
        )
        logger.info(
            "Boot for %r: %d ranked, %d recent, %d sources",
            query, len(ranked), len(recent_activity), len(budget.attempts),
        )
        return BootResult(
            narrative=narrative,
            ranked_context=ranked,
            recent_activity=recent_activity,
            auxiliary=auxiliary,
        )

    # ------------------------------------------------------------------
    # Fan-out helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        adapter: Optional[SourceAdapter],
        request: SourceRequest,
        backfill: bool = False,
    ) -> Optional[List[Candidate]]:
        """Run one source; any failure is logged and reported as absent (None)"""
        if adapter is None:
            return None
        try:
            candidates = await adapter.search(request)
        except Exception as e:
            logger.error("Source %s failed, treating as absent: %s", adapter.name, e, exc_info=True)
            return None

        if backfill and request.project and len(candidates) < request.limit:
            try:
                unfiltered = await adapter.search(
                    replace(request, project=None, limit=request.limit * 2)
                )
            except Exception as e:
                # project-filtered results still stand
                logger.warning("Backfill for %s failed: %s", adapter.name, e, exc_info=True)
                return candidates
            seen = {dedup_key(c) for c in candidates}
            candidates = (candidates + self._unique(unfiltered, seen))[:request.limit]
        return candidates

    async def _call_cached(
        self, adapter: SourceAdapter, request: SourceRequest
    ) -> Optional[List[Candidate]]:
        key = (adapter.name, request.project)
        cached = self._aux_cache.get(key)
        if cached is not None:
            return cached

        candidates = await self._call(adapter, request)
        if candidates is not None:
            self._aux_cache.set(key, candidates)
        return candidates

    @staticmethod
    def _unique(candidates: Sequence[Candidate], seen: set) -> List[Candidate]:
        """Drop candidates whose key is in seen; adds kept keys to seen"""
        unique = []
        for candidate in candidates:
            key = dedup_key(candidate)
            if key in seen:
                continue
            seen.add(key)
            unique.append(candidate)
        return unique

    def _record(
        self,
        budget: SearchBudget,
        name: str,
        candidates: Optional[List[Candidate]],
    ) -> None:
        candidates = candidates or []
        budget.record(SearchAttempt(
            adapter_name=name,
            results_found=bool(candidates),
            result_quality=score_result_quality(
                candidates,
                high_threshold=self._budget_config.high_threshold,
                medium_threshold=self._budget_config.medium_threshold,
            ),
            token_cost=_estimate_tokens(candidates),
            result_count=len(candidates),
        ))

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render_narrative(
        self,
        query: str,
        project: Optional[str],
        lookback_days: int,
        ranked: Sequence[RankedResult],
        recent: Sequence[Candidate],
        auxiliary: Dict[str, List[Candidate]],
        now: datetime,
    ) -> str:
        """Deterministic markdown; same inputs give the same text"""
        truncate = self._config.context_truncate
        lines: List[str] = [f"# Brain Boot: {now.strftime('%Y-%m-%d')}", ""]

        if project:
            lines.extend([f"**Project**: {project}", ""])
        lines.append(f"**Query**: {query}")
        lines.append(f"**Lookback**: Last {lookback_days} days")
        lines.append("")

        titles = {a.name: getattr(a, "title", a.name) for a in self._auxiliaries}
        for name, items in auxiliary.items():
            if not items:
                continue
            lines.extend([f"## {titles.get(name, name)}", ""])
            for item in items:
                lines.append(f"- {smart_truncate(item.text, truncate)}")
            lines.append("")

        lines.extend([f"## Relevant Context ({len(ranked)} results)", ""])
        if not ranked:
            lines.append("*No relevant context found*")
            lines.append("")
        else:
            for idx, result in enumerate(ranked[:RANKED_DISPLAY_LIMIT], 1):
                lines.append(
                    f"### {idx}. {_display_timestamp(result.timestamp)} "
                    f"(score: {result.score:.2f}, {result.source_tag})"
                )
                if result.project:
                    lines.append(f"   **Project**: {result.project}")
                if result.conversation:
                    lines.append(f"   **Conversation**: {result.conversation}")
                lines.append("")
                lines.append(f"   {smart_truncate(result.text, truncate)}")
                lines.append("")

        lines.extend([f"## Recent Activity ({len(recent)} messages)", ""])
        if not recent:
            lines.append("*No recent activity*")
        else:
            for item in recent[:RECENT_DISPLAY_LIMIT]:
                project_tag = f" [{item.metadata.project}]" if item.metadata.project else ""
                preview = item.text[:RECENT_PREVIEW_LENGTH]
                if len(item.text) > RECENT_PREVIEW_LENGTH:
                    preview += "..."
                lines.append(
                    f"- **{_display_timestamp(item.metadata.timestamp)}**{project_tag}: {preview}"
                )

        return "\n".join(lines)
