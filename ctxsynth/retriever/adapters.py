"""
Source Adapters

Every retrieval source answers a SourceRequest with a list of Candidates.
Adapters may raise (AdapterError or anything else); the orchestrator isolates
each call and treats a failure as "absent".

Sources:
- ContextStoreAdapter    - hot-tier active context, flat recency score
- RecentActivityAdapter  - newest durable messages, unfiltered by project
- VectorSearchAdapter    - remote similarity search over HTTP
- LocalVectorIndex       - in-process cosine index over an embedding callable
- StaticFeedAdapter      - any async callable returning text items
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx
import numpy as np

from ..common.errors import AdapterError
from ..common.schemas import Candidate, CandidateMetadata, CapturedEntry, DurableMessage
from ..scribe.context_store import ContextQuery, ContextStore
from ..scribe.durable_store import DurableStore

logger = logging.getLogger("ctxsynth.retriever.adapters")

ACTIVE_CONTEXT_SCORE = 0.9


@dataclass
class SourceRequest:
    """What the orchestrator asks every source"""
    query: str
    limit: int = 10
    project: Optional[str] = None
    since: Optional[datetime] = None


class SourceAdapter(ABC):
    """Base class for retrieval sources"""

    name: str = "source"

    @abstractmethod
    async def search(self, request: SourceRequest) -> List[Candidate]:
        """Return candidates for the request; raise on failure"""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# ============================================================================
# Local stores
# ============================================================================

class ContextStoreAdapter(SourceAdapter):
    """
    Active context from the hot tier.

    Entries carry no similarity of their own, so every one gets the same
    recency score.
    """

    name = "active_context"

    def __init__(self, store: ContextStore, score: float = ACTIVE_CONTEXT_SCORE):
        self._store = store
        self._score = score

    async def search(self, request: SourceRequest) -> List[Candidate]:
        entries = await self._store.query(ContextQuery(
            limit=request.limit,
            project=request.project,
            since=request.since,
        ))
        return [self._to_candidate(e) for e in entries]

    def _to_candidate(self, entry: CapturedEntry) -> Candidate:
        return Candidate(
            text=entry.message.text,
            source_tag=self.name,
            metadata=CandidateMetadata(
                timestamp=entry.timestamp,
                project=entry.metadata.project,
                score=self._score,
                conversation=entry.conversation_id,
                identity=entry.message.id,
                extra={
                    "client_type": entry.client_type.value,
                    "role": entry.message.role.value,
                    "personas": list(entry.metadata.personas),
                },
            ),
        )


class RecentActivityAdapter(SourceAdapter):
    """Newest durable messages. Ignores the project filter."""

    name = "recent_activity"

    def __init__(self, durable: DurableStore, limit: int = 20):
        self._durable = durable
        self._limit = limit

    async def search(self, request: SourceRequest) -> List[Candidate]:
        messages = await self._durable.recent_messages(
            limit=self._limit,
            since=request.since.timestamp() if request.since else None,
        )
        return [self._to_candidate(m) for m in messages]

    def _to_candidate(self, message: DurableMessage) -> Candidate:
        return Candidate(
            text=message.content,
            source_tag=self.name,
            metadata=CandidateMetadata(
                timestamp=message.timestamp,
                project=message.project,
                # external id, so a mirrored message keys the same as its hot copy
                conversation=message.external_conversation_id or message.conversation_id,
                identity=message.id,
                extra={"role": message.role.value, "idx": message.idx},
            ),
        )


# ============================================================================
# Vector similarity
# ============================================================================

class VectorSearchAdapter(SourceAdapter):
    """
    Remote similarity search.

    POSTs {query, limit, project, since, threshold} to {endpoint}/search and
    expects {"results": [...]} rows with text/content and a similarity score.
    Transient failures (5xx, connection errors) are retried with exponential
    backoff: 1s, 2s, 4s.
    """

    name = "semantic_search"

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        threshold: float = 0.3,
        timeout: float = 30.0,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.threshold = threshold
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._client = client
        self._sleep = sleep

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, request: SourceRequest) -> List[Candidate]:
        payload: Dict[str, Any] = {
            "query": request.query,
            "limit": request.limit,
            "project": request.project,
            "since": request.since.isoformat() if request.since else None,
            "threshold": self.threshold,
        }
        data = await self._post_with_retry("/search", payload)

        rows = data.get("results", []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise AdapterError(f"{self.name}: unexpected response shape {type(rows).__name__}")

        candidates = [Candidate.from_raw(row, self.name) for row in rows if isinstance(row, dict)]
        return [c for c in candidates if c.text and c.metadata.score >= self.threshold]

    async def _post_with_retry(self, path: str, payload: Dict[str, Any]) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        client = self._ensure_client()
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            try:
                response = await client.post(f"{self.endpoint}{path}", json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise AdapterError(f"{self.name}: HTTP {e.response.status_code}") from e
                last_error = e
            except httpx.TransportError as e:
                last_error = e
            except ValueError as e:
                raise AdapterError(f"{self.name}: response is not JSON: {e}") from e

            if attempt < self.max_retries - 1:
                backoff = 2 ** attempt
                logger.warning(
                    "%s transient error (attempt %d/%d), retrying in %ds: %s",
                    self.name, attempt + 1, self.max_retries, backoff, last_error,
                )
                await self._sleep(backoff)

        raise AdapterError(
            f"{self.name}: failed after {self.max_retries} attempts: {last_error}"
        ) from last_error


Embedder = Callable[[List[str]], Sequence[Sequence[float]]]


class LocalVectorIndex(SourceAdapter):
    """
    In-process cosine-similarity index.

    Embedding is delegated to the injected callable (texts -> vectors);
    this class only stores vectors and ranks them.

    Usage:
        index = LocalVectorIndex(embedding_service.embed)
        index.add([{"id": "n1", "text": "...", "project": "evna", "timestamp": "..."}])
        candidates = await index.search(SourceRequest("auth decision", limit=5))
    """

    name = "local_vectors"

    def __init__(self, embed: Embedder, threshold: float = 0.3, name: Optional[str] = None):
        self._embed = embed
        self.threshold = threshold
        if name:
            self.name = name
        self._items: List[Dict[str, Any]] = []
        self._matrix: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self._items)

    def add(self, items: Sequence[Union[Dict[str, Any], str]]) -> int:
        """Embed and index items (dicts with "text", or bare strings)"""
        rows = [{"text": i} if isinstance(i, str) else dict(i) for i in items]
        rows = [r for r in rows if r.get("text")]
        if not rows:
            return 0

        vectors = np.asarray(self._embed([r["text"] for r in rows]), dtype=np.float32)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        vectors = vectors / norms

        self._matrix = vectors if self._matrix is None else np.vstack([self._matrix, vectors])
        self._items.extend(rows)
        return len(rows)

    async def search(self, request: SourceRequest) -> List[Candidate]:
        if self._matrix is None or not request.query:
            return []

        query_vec = np.asarray(self._embed([request.query])[0], dtype=np.float32)
        norm = np.linalg.norm(query_vec)
        if norm == 0:
            return []
        similarities = self._matrix @ (query_vec / norm)

        project = request.project.lower() if request.project else None
        candidates: List[Candidate] = []
        for idx in np.argsort(-similarities):
            score = float(np.clip(similarities[idx], 0.0, 1.0))
            if score < self.threshold:
                break
            item = self._items[idx]
            if project and project not in str(item.get("project") or "").lower():
                continue
            if request.since and not self._is_since(item.get("timestamp"), request.since):
                continue
            candidates.append(Candidate.from_raw({**item, "score": score}, self.name))
            if len(candidates) >= request.limit:
                break
        return candidates

    @staticmethod
    def _is_since(timestamp: Any, since: datetime) -> bool:
        if not timestamp:
            return True
        if isinstance(timestamp, datetime):
            parsed = timestamp
        else:
            try:
                parsed = datetime.fromisoformat(str(timestamp).replace("Z", "+00:00"))
            except ValueError:
                return True
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        return parsed >= since


# ============================================================================
# Auxiliary feeds
# ============================================================================

FeedItem = Union[str, Dict[str, Any]]


class StaticFeedAdapter(SourceAdapter):
    """
    Wraps an async callable as an auxiliary source (daily notes, repo
    status...). Its items are also rendered as their own narrative section.
    """

    def __init__(
        self,
        name: str,
        fetch: Callable[[SourceRequest], Awaitable[Sequence[FeedItem]]],
        title: Optional[str] = None,
    ):
        self.name = name
        self.title = title or name.replace("_", " ").title()
        self._fetch = fetch

    async def search(self, request: SourceRequest) -> List[Candidate]:
        items = await self._fetch(request)
        candidates = []
        for item in items or []:
            raw = {"text": item} if isinstance(item, str) else item
            candidate = Candidate.from_raw(raw, self.name)
            if candidate.text:
                candidates.append(candidate)
        return candidates
