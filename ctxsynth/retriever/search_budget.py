"""
Search Budget

Tracks the retrieval attempts made for one query and decides when to stop
searching, so a query with no answer does not burn tokens exhaustively.

Rules, first match wins:
1. token_cap          - total token cost > cap and no attempt found anything
2. three_strikes      - last N attempts all scored "none"
3. declining_quality  - last 3 attempts' quality never goes up
4. project mismatch   - reserved, never triggers

Stopping is not an error: build_negative_response() turns it into a
user-facing narrative.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

logger = logging.getLogger("ctxsynth.retriever.search_budget")

DEFAULT_TOKEN_CAP = 15000
DEFAULT_STRIKE_COUNT = 3
TREND_WINDOW = 3
NO_RESULTS_MARKER = "**No results found**"


class ResultQuality(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def ordinal(self) -> int:
        return _QUALITY_ORDINALS[self]


_QUALITY_ORDINALS = {
    ResultQuality.NONE: 0,
    ResultQuality.LOW: 1,
    ResultQuality.MEDIUM: 2,
    ResultQuality.HIGH: 3,
}


@dataclass
class SearchAttempt:
    """One source queried once within a search session"""
    adapter_name: str
    results_found: bool
    result_quality: ResultQuality
    token_cost: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    result_count: int = 0


@dataclass
class Termination:
    """Outcome of should_terminate()"""
    stop: bool
    reason: Optional[str] = None
    message: Optional[str] = None


def _similarity_of(result: Any) -> float:
    """Native similarity of a result, from a Candidate/RankedResult or a raw dict"""
    if isinstance(result, dict):
        for key in ("similarity_score", "similarity", "score"):
            value = result.get(key)
            if value:
                return float(value)
        return 0.0

    score = getattr(result, "score", None)
    if score is None:
        metadata = getattr(result, "metadata", None)
        score = getattr(metadata, "score", None)
    return float(score or 0.0)


def score_result_quality(
    results: Iterable[Any],
    result_text: Optional[str] = None,
    high_threshold: float = 0.5,
    medium_threshold: float = 0.3,
) -> ResultQuality:
    """
    Grade a result set.

    Empty (or a "**No results found**" rendering) is "none". Otherwise the
    mean of the positive similarity scores decides; without any scores the
    count does (more than 5 is "medium").
    """
    results = list(results)
    if not results or (result_text and NO_RESULTS_MARKER in result_text):
        return ResultQuality.NONE

    similarities = [s for s in (_similarity_of(r) for r in results) if s > 0]
    if similarities:
        average = sum(similarities) / len(similarities)
        if average >= high_threshold:
            return ResultQuality.HIGH
        if average >= medium_threshold:
            return ResultQuality.MEDIUM
        return ResultQuality.LOW

    return ResultQuality.MEDIUM if len(results) > 5 else ResultQuality.LOW


class SearchBudget:
    """
    Per-query search bookkeeping. Synchronous; create one per query.

    Usage:
        budget = SearchBudget("what did I decide about auth?")
        budget.record(SearchAttempt("semantic", False, ResultQuality.NONE, 1200))
        decision = budget.should_terminate()
        if decision.stop:
            return budget.build_negative_response()
    """

    def __init__(
        self,
        query: str,
        token_cap: int = DEFAULT_TOKEN_CAP,
        strike_count: int = DEFAULT_STRIKE_COUNT,
    ):
        self.query = query
        self.token_cap = token_cap
        self.strike_count = strike_count
        self._attempts: List[SearchAttempt] = []
        self._total_tokens = 0

    @property
    def attempts(self) -> List[SearchAttempt]:
        return list(self._attempts)

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def found_count(self) -> int:
        return sum(1 for a in self._attempts if a.results_found)

    def record(self, attempt: SearchAttempt) -> None:
        self._attempts.append(attempt)
        self._total_tokens += attempt.token_cost

    def should_terminate(self) -> Termination:
        for check in (
            self._check_token_cap,
            self._check_three_strikes,
            self._check_quality_trend,
            self._check_project_mismatch,
        ):
            decision = check()
            if decision.stop:
                logger.info("Search for %r stopped: %s", self.query, decision.reason)
                return decision
        return Termination(stop=False)

    def _check_token_cap(self) -> Termination:
        if self._total_tokens > self.token_cap and self.found_count == 0:
            return Termination(
                stop=True,
                reason="token_cap",
                message=(
                    f"Searched {len(self._attempts)} sources ({self._total_tokens} tokens) "
                    "but found no relevant results."
                ),
            )
        return Termination(stop=False)

    def _check_three_strikes(self) -> Termination:
        if len(self._attempts) < self.strike_count:
            return Termination(stop=False)

        recent = self._attempts[-self.strike_count:]
        if all(a.result_quality is ResultQuality.NONE for a in recent):
            searched = ", ".join(a.adapter_name for a in recent)
            return Termination(
                stop=True,
                reason="three_strikes",
                message=(
                    f"Searched {searched} with no results. "
                    "The information may not be in accessible context."
                ),
            )
        return Termination(stop=False)

    def _check_quality_trend(self) -> Termination:
        if len(self._attempts) < TREND_WINDOW:
            return Termination(stop=False)

        scores = [a.result_quality.ordinal for a in self._attempts[-TREND_WINDOW:]]
        if all(later <= earlier for earlier, later in zip(scores, scores[1:])):
            return Termination(
                stop=True,
                reason="declining_quality",
                message="Search results are getting less relevant. Stopping to avoid token waste.",
            )
        return Termination(stop=False)

    def _check_project_mismatch(self) -> Termination:
        # Reserved rule; needs project extraction from the query to compare against results
        return Termination(stop=False)

    def build_negative_response(self) -> str:
        """Graceful "nothing found" narrative"""
        searched: List[str] = []
        for attempt in self._attempts:
            if attempt.adapter_name not in searched:
                searched.append(attempt.adapter_name)

        return (
            f"I searched multiple sources ({', '.join(searched)}, "
            f"{len(self._attempts)} searches) but couldn't find recent work on this topic.\n"
            "\n"
            "This could mean:\n"
            "- The work hasn't been captured in accessible context yet\n"
            "- It occurred outside my searchable timeframe\n"
            "- The terminology might be different than expected\n"
            "\n"
            "Would you like me to search with different terms, or check a specific "
            "timeframe/project?"
        )
