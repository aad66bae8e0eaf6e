"""
Tests for the context synthesizer (brain boot)

Sources are faked; the last class wires the real engine over temporary
sqlite files.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock, patch


NOW = datetime(2025, 10, 21, 9, 0, tzinfo=timezone.utc)
T0 = "2025-10-21T08:00:00+00:00"


def cand(text, score=0.9, tag="", **metadata):
    from ctxsynth.common.schemas import Candidate, CandidateMetadata
    metadata.setdefault("timestamp", T0)
    return Candidate(text=text, source_tag=tag, metadata=CandidateMetadata(score=score, **metadata))


def make_source(name, results=(), error=None, by_project=None):
    """Fake adapter; by_project maps request.project -> results"""
    from ctxsynth.retriever.adapters import SourceAdapter

    class FakeSource(SourceAdapter):
        def __init__(self):
            self.name = name
            self.requests = []

        async def search(self, request):
            self.requests.append(request)
            if error is not None:
                raise error
            if by_project is not None:
                return list(by_project.get(request.project, []))
            return list(results)

    return FakeSource()


def make_synth(**kwargs):
    from ctxsynth.retriever.synthesizer import ContextSynthesizer
    kwargs.setdefault("clock", lambda: NOW)
    return ContextSynthesizer(**kwargs)


def fake_reranker():
    reranker = Mock()
    reranker.rerank = AsyncMock(side_effect=lambda query, docs, top_n: [0.5] * len(docs))
    return reranker


class TestFanOut:
    @pytest.mark.asyncio
    async def test_failing_source_is_absent(self):
        store = make_source("active_context", [cand("auth decision", conversation="c1")])
        vector = make_source("semantic_search", error=RuntimeError("connection refused"))
        recent = make_source("recent_activity", [])

        result = await make_synth(store=store, vector=vector, recent=recent).boot("auth")

        assert [r.text for r in result.ranked_context] == ["auth decision"]
        assert not result.is_negative
        assert "## Relevant Context (1 results)" in result.narrative

    @pytest.mark.asyncio
    async def test_since_from_lookback(self):
        store = make_source("active_context")
        recent = make_source("recent_activity")

        await make_synth(store=store, recent=recent).boot("q", lookback_days=3)

        assert store.requests[0].since == NOW - timedelta(days=3)
        assert recent.requests[0].since == NOW - timedelta(days=3)

    @pytest.mark.asyncio
    async def test_recent_activity_ignores_project(self):
        recent = make_source("recent_activity")

        await make_synth(recent=recent).boot("q", project="evna")

        assert recent.requests[0].project is None
        assert recent.requests[0].limit == 20

    @pytest.mark.asyncio
    async def test_backfill_with_unfiltered_results(self):
        filtered = [cand("evna note", conversation="c1")]
        unfiltered = [
            cand("evna note", conversation="c1"),
            cand("other note", conversation="c2"),
            cand("third note", conversation="c3"),
        ]
        store = make_source("active_context", by_project={"evna": filtered, None: unfiltered})

        result = await make_synth(store=store).boot("q", project="evna", max_results=3)

        assert [r.project for r in store.requests] == ["evna", None]
        assert store.requests[1].limit == 6
        assert sorted(r.text for r in result.ranked_context) == ["evna note", "other note", "third note"]

    @pytest.mark.asyncio
    async def test_failed_backfill_keeps_filtered_results(self):
        from ctxsynth.retriever.adapters import SourceAdapter

        class FlakyStore(SourceAdapter):
            name = "active_context"

            async def search(self, request):
                if request.project is None:
                    raise RuntimeError("unfiltered query timed out")
                return [cand("evna work", conversation="c1")]

        result = await make_synth(store=FlakyStore()).boot("q", project="evna")

        assert [r.text for r in result.ranked_context] == ["evna work"]

    @pytest.mark.asyncio
    async def test_no_backfill_without_project(self):
        store = make_source("active_context", [cand("one")])

        await make_synth(store=store).boot("q", max_results=5)

        assert len(store.requests) == 1


class TestDedupAndFusion:
    @pytest.mark.asyncio
    async def test_store_duplicate_of_vector_dropped(self):
        store = make_source("active_context", [
            cand("Auth token decision", conversation="c1", timestamp=T0),
            cand("unrelated", conversation="c2"),
        ])
        vector = make_source("semantic_search", [
            cand("auth token decision", score=0.7, conversation="c1", timestamp="2025-10-21T08:00:00Z"),
        ])

        result = await make_synth(store=store, vector=vector).boot("auth")

        tags = sorted((r.text.lower(), r.source_tag) for r in result.ranked_context)
        assert tags == [("auth token decision", "semantic_search"), ("unrelated", "active_context")]

    @pytest.mark.asyncio
    async def test_recent_activity_separate_without_reranker(self):
        store = make_source("active_context", [cand("ctx")])
        recent = make_source("recent_activity", [cand("latest message", project="float/evna")])

        result = await make_synth(store=store, recent=recent).boot("q")

        assert [r.source_tag for r in result.ranked_context] == ["active_context"]
        assert [c.text for c in result.recent_activity] == ["latest message"]
        assert "## Recent Activity (1 messages)" in result.narrative
        assert "- **2025-10-21 08:00** [float/evna]: latest message" in result.narrative

    @pytest.mark.asyncio
    async def test_reranker_folds_in_recent_and_auxiliaries(self):
        from ctxsynth.retriever.adapters import StaticFeedAdapter
        from ctxsynth.retriever.fusion import FusionRanker

        reranker = fake_reranker()
        store = make_source("active_context", [cand("ctx")])
        recent = make_source("recent_activity", [cand("latest", conversation="c9")])
        notes = StaticFeedAdapter("daily_notes", AsyncMock(return_value=["todo: ship"]))

        result = await make_synth(
            store=store, recent=recent, auxiliaries=[notes], fusion=FusionRanker(reranker)
        ).boot("q")

        assert result.recent_activity == []
        assert sorted(r.source_tag for r in result.ranked_context) == [
            "active_context", "daily_notes", "recent_activity",
        ]
        assert "## Daily Notes" in result.narrative
        assert "*No recent activity*" in result.narrative
        docs = reranker.rerank.await_args.args[1]
        assert docs == ["ctx", "todo: ship", "latest"]

    @pytest.mark.asyncio
    async def test_max_results_truncates(self):
        store = make_source("active_context", [cand(f"doc {i}", conversation=f"c{i}") for i in range(8)])

        result = await make_synth(store=store).boot("q", max_results=3)

        assert len(result.ranked_context) == 3


class TestNegativeResponse:
    @pytest.mark.asyncio
    async def test_three_empty_sources(self):
        result = await make_synth(
            store=make_source("active_context"),
            vector=make_source("semantic_search"),
            recent=make_source("recent_activity"),
        ).boot("quantum auth")

        assert result.is_negative
        assert result.termination.reason == "three_strikes"
        assert result.narrative.startswith(
            "I searched multiple sources (active_context, semantic_search, recent_activity, 3 searches)"
        )
        assert result.ranked_context == []

    @pytest.mark.asyncio
    async def test_failures_count_as_strikes(self):
        result = await make_synth(
            store=make_source("active_context", error=RuntimeError("db locked")),
            vector=make_source("semantic_search", error=RuntimeError("timeout")),
            recent=make_source("recent_activity"),
        ).boot("q")

        assert result.is_negative

    @pytest.mark.asyncio
    async def test_successful_boot_has_no_termination(self):
        # high, high, low is a non-increasing run, yet results were found
        result = await make_synth(
            store=make_source("active_context", [cand("ctx", conversation="c1")]),
            vector=make_source("semantic_search", [cand("vec", score=0.8, conversation="c2")]),
            recent=make_source("recent_activity", [cand("recent", score=0.0, conversation="c3")]),
        ).boot("q")

        assert result.termination is None
        assert not result.is_negative
        assert len(result.ranked_context) == 2

    @pytest.mark.asyncio
    async def test_single_empty_source_renders_empty_sections(self):
        result = await make_synth(store=make_source("active_context")).boot("q")

        assert not result.is_negative
        assert "## Relevant Context (0 results)" in result.narrative
        assert "*No relevant context found*" in result.narrative
        assert "*No recent activity*" in result.narrative


class TestAuxiliaryCache:
    @pytest.mark.asyncio
    async def test_feed_cached_between_boots(self):
        from ctxsynth.retriever.adapters import StaticFeedAdapter

        fetch = AsyncMock(return_value=["PR #12 open"])
        synth = make_synth(
            store=make_source("active_context", [cand("ctx")]),
            auxiliaries=[StaticFeedAdapter("repo_status", fetch)],
        )

        first = await synth.boot("q")
        second = await synth.boot("q")
        assert fetch.await_count == 1
        assert first.auxiliary == second.auxiliary

        synth.aux_cache.invalidate()
        await synth.boot("q")
        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_cache_keyed_by_project(self):
        from ctxsynth.retriever.adapters import StaticFeedAdapter

        fetch = AsyncMock(return_value=["note"])
        synth = make_synth(auxiliaries=[StaticFeedAdapter("daily_notes", fetch)])

        await synth.boot("q", project="evna")
        await synth.boot("q", project="rangle")

        assert fetch.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_not_cached(self):
        from ctxsynth.retriever.adapters import StaticFeedAdapter

        fetch = AsyncMock(side_effect=[RuntimeError("down"), ["back up"]])
        synth = make_synth(
            store=make_source("active_context", [cand("ctx")]),
            auxiliaries=[StaticFeedAdapter("daily_notes", fetch)],
        )

        first = await synth.boot("q")
        second = await synth.boot("q")

        assert first.auxiliary == {"daily_notes": []}
        assert [c.text for c in second.auxiliary["daily_notes"]] == ["back up"]


class TestNarrative:
    @pytest.mark.asyncio
    async def test_header_and_section_order(self):
        from ctxsynth.retriever.adapters import StaticFeedAdapter

        synth = make_synth(
            store=make_source("active_context", [cand("auth notes", project="float/evna", conversation="c1")]),
            recent=make_source("recent_activity", [cand("hello")]),
            auxiliaries=[StaticFeedAdapter("daily_notes", AsyncMock(return_value=["- [ ] review PR"]))],
        )

        narrative = (await synth.boot("auth", project="evna")).narrative

        assert narrative.startswith(
            "# Brain Boot: 2025-10-21\n\n**Project**: evna\n\n**Query**: auth\n**Lookback**: Last 7 days\n"
        )
        notes = narrative.index("## Daily Notes")
        ranked = narrative.index("## Relevant Context")
        recent = narrative.index("## Recent Activity")
        assert notes < ranked < recent
        assert "### 1. 2025-10-21 08:00 (score: 0.90, active_context)" in narrative
        assert "   **Project**: float/evna" in narrative
        assert "   **Conversation**: c1" in narrative

    @pytest.mark.asyncio
    async def test_deterministic(self):
        synth = make_synth(
            store=make_source("active_context", [cand("a", conversation="c1"), cand("b", conversation="c2")]),
            recent=make_source("recent_activity", [cand("r")]),
        )

        first = await synth.boot("q")
        second = await synth.boot("q")

        assert first.narrative == second.narrative

    @pytest.mark.asyncio
    async def test_recent_preview_truncated(self):
        long_text = "x" * 150
        synth = make_synth(recent=make_source("recent_activity", [cand(long_text, timestamp="")]))

        narrative = (await synth.boot("q")).narrative

        assert f"- **unknown time**: {'x' * 100}..." in narrative

    @pytest.mark.asyncio
    async def test_ranked_display_capped_at_five(self):
        store = make_source("active_context", [cand(f"doc {i}", conversation=f"c{i}") for i in range(8)])

        result = await make_synth(store=store).boot("q")

        assert len(result.ranked_context) == 8
        assert "## Relevant Context (8 results)" in result.narrative
        assert "### 5." in result.narrative
        assert "### 6." not in result.narrative


ALIAS_TABLE = {
    "projects": {
        "evna": {"canonical": "float/evna", "aliases": ["evna", "evna-next"]},
    }
}


class TestEngine:
    @pytest.mark.asyncio
    async def test_capture_then_boot(self, tmp_path):
        from ctxsynth.common.aliases import AliasResolver
        from ctxsynth.common.config import CtxSynthConfig, StorageConfig
        from ctxsynth.common.schemas import Role
        from ctxsynth.engine import build_engine

        config = CtxSynthConfig(storage=StorageConfig(
            hot_db_path=str(tmp_path / "hot.db"),
            durable_db_path=str(tmp_path / "durable.db"),
        ))
        engine = await build_engine(config, aliases=AliasResolver.from_dict(ALIAS_TABLE))
        try:
            captured = await engine.capture(
                "conv-1",
                Role.USER,
                "ctx::2025-10-21 @ 08:25 AM - [project::evna] decided to rotate auth tokens",
                timestamp=datetime.now(timezone.utc) - timedelta(hours=1),
            )
            result = await engine.boot("auth tokens", project="evna")
        finally:
            await engine.close()

        assert captured.mirror.ok
        assert captured.entry.is_linked
        assert captured.entry.metadata.project == "float/evna"

        assert [r.source_tag for r in result.ranked_context] == ["active_context"]
        assert result.ranked_context[0].project == "float/evna"
        assert [c.text for c in result.recent_activity] == [captured.entry.message.text]
        assert "**Project**: evna" in result.narrative
        assert "## Recent Activity (1 messages)" in result.narrative

    @pytest.mark.asyncio
    async def test_reranked_boot_keeps_one_copy_of_mirrored_message(self, tmp_path):
        from ctxsynth.common.aliases import AliasResolver
        from ctxsynth.common.config import CtxSynthConfig, StorageConfig
        from ctxsynth.common.schemas import Role
        from ctxsynth.engine import build_engine

        config = CtxSynthConfig(storage=StorageConfig(
            hot_db_path=str(tmp_path / "hot.db"),
            durable_db_path=str(tmp_path / "durable.db"),
        ))
        config.rerank.api_key = "co-key"

        reranker = fake_reranker()
        reranker.close = AsyncMock()
        with patch("ctxsynth.engine.CrossEncoderReranker", return_value=reranker):
            engine = await build_engine(config, aliases=AliasResolver.from_dict(ALIAS_TABLE))
        try:
            await engine.capture(
                "conv-1",
                Role.USER,
                "decided to rotate auth tokens",
                timestamp=datetime.now(timezone.utc) - timedelta(hours=1),
            )
            result = await engine.boot("auth tokens")
        finally:
            await engine.close()

        assert [r.text for r in result.ranked_context] == ["decided to rotate auth tokens"]
        assert result.ranked_context[0].source_tag == "active_context"
        assert result.recent_activity == []
        reranker.rerank.assert_awaited_once()
        reranker.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_without_durable_store(self, tmp_path):
        from ctxsynth.common.aliases import AliasResolver
        from ctxsynth.common.config import CtxSynthConfig, StorageConfig
        from ctxsynth.common.schemas import Role
        from ctxsynth.engine import build_engine

        config = CtxSynthConfig(storage=StorageConfig(
            hot_db_path=str(tmp_path / "hot.db"),
            durable_db_path="",
        ))
        engine = await build_engine(config, aliases=AliasResolver())
        try:
            captured = await engine.capture("conv-1", Role.ASSISTANT, "noted")
            result = await engine.boot("anything")
        finally:
            await engine.close()

        assert engine.durable is None
        assert not captured.mirror.ok
        assert [r.text for r in result.ranked_context] == ["noted"]
