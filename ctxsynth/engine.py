"""
Engine

Wires configuration, the alias table, both storage tiers and every retrieval
source into one object.

Startup failures are fatal: a missing alias table raises ConfigurationError,
an unopenable store raises HotTierError / DurableStoreError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from .common.aliases import AliasResolver, load_alias_table
from .common.cache import TTLCache
from .common.config import CtxSynthConfig, ensure_directories, load_config
from .common.schemas import ClientType, Role
from .retriever.adapters import (
    ContextStoreAdapter,
    RecentActivityAdapter,
    SourceAdapter,
    VectorSearchAdapter,
)
from .retriever.fusion import FusionRanker
from .retriever.reranker import CrossEncoderReranker
from .retriever.synthesizer import BootResult, ContextSynthesizer
from .scribe.annotation_parser import AnnotationParser
from .scribe.context_store import CaptureResult, ContextStore
from .scribe.durable_store import DurableStore
from .scribe.hot_tier import HotTier

logger = logging.getLogger("ctxsynth.engine")


@dataclass
class Engine:
    """Fully wired capture + restore engine"""
    config: CtxSynthConfig
    aliases: AliasResolver
    parser: AnnotationParser
    hot: HotTier
    durable: Optional[DurableStore]
    store: ContextStore
    synthesizer: ContextSynthesizer
    aux_cache: TTLCache
    vector: Optional[VectorSearchAdapter] = None
    reranker: Optional[CrossEncoderReranker] = None
    auxiliaries: List[SourceAdapter] = field(default_factory=list)

    async def capture(
        self,
        conversation_id: str,
        role: Role,
        text: str,
        client_type: Optional[ClientType] = None,
        timestamp: Optional[datetime] = None,
    ) -> CaptureResult:
        return await self.store.capture_message(
            conversation_id, role, text, client_type=client_type, timestamp=timestamp
        )

    async def boot(
        self,
        query: str,
        project: Optional[str] = None,
        lookback_days: Optional[int] = None,
        max_results: Optional[int] = None,
    ) -> BootResult:
        return await self.synthesizer.boot(
            query, project=project, lookback_days=lookback_days, max_results=max_results
        )

    async def close(self) -> None:
        if self.vector is not None:
            await self.vector.close()
        if self.reranker is not None:
            await self.reranker.close()
        if self.durable is not None:
            await self.durable.close()
        await self.hot.close()


async def build_engine(
    config: Optional[CtxSynthConfig] = None,
    aliases: Optional[AliasResolver] = None,
    auxiliaries: Sequence[SourceAdapter] = (),
) -> Engine:
    """
    Build and initialize an Engine.

    Args:
        config: Configuration (default: load_config())
        aliases: Pre-built alias resolver (default: load the configured table)
        auxiliaries: Extra read-only sources rendered as their own sections

    Raises:
        ConfigurationError: The alias table is missing or unreadable
        HotTierError: The hot tier cannot be opened
        DurableStoreError: A configured durable store cannot be opened
    """
    if config is None:
        ensure_directories()
        config = load_config()
    if aliases is None:
        aliases = load_alias_table(config.aliases.path)
    parser = AnnotationParser(aliases)

    hot = HotTier(config.storage.hot_db_path, ttl_hours=config.storage.hot_ttl_hours)
    await hot.initialize()

    durable = None
    if config.storage.durable_db_path:
        durable = DurableStore(config.storage.durable_db_path)
        try:
            await durable.initialize()
        except Exception:
            await hot.close()
            raise

    store = ContextStore(
        hot,
        durable,
        parser=parser,
        aliases=aliases,
        stream_truncate=config.boot.stream_truncate,
    )

    vector = None
    if config.vector.endpoint:
        vector = VectorSearchAdapter(
            config.vector.endpoint,
            api_key=config.vector.api_key,
            threshold=config.vector.threshold,
            timeout=config.vector.timeout,
            max_retries=config.vector.max_retries,
        )

    reranker = None
    if config.rerank.api_key:
        reranker = CrossEncoderReranker(
            config.rerank.api_key,
            model=config.rerank.model,
            base_url=config.rerank.base_url,
            timeout=config.rerank.timeout,
        )

    aux_cache = TTLCache(config.boot.aux_cache_ttl_seconds)
    synthesizer = ContextSynthesizer(
        store=ContextStoreAdapter(store, score=config.boot.active_context_score),
        vector=vector,
        recent=RecentActivityAdapter(durable, limit=config.boot.recent_limit) if durable else None,
        auxiliaries=auxiliaries,
        fusion=FusionRanker(reranker),
        aux_cache=aux_cache,
        config=config.boot,
        budget_config=config.budget,
    )

    logger.info(
        "Engine ready (durable=%s, vector=%s, reranker=%s, auxiliaries=%d)",
        durable is not None, vector is not None, reranker is not None, len(auxiliaries),
    )
    return Engine(
        config=config,
        aliases=aliases,
        parser=parser,
        hot=hot,
        durable=durable,
        store=store,
        synthesizer=synthesizer,
        aux_cache=aux_cache,
        vector=vector,
        reranker=reranker,
        auxiliaries=list(auxiliaries),
    )
