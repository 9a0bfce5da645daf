"""
Unit Tests for Hybrid Search

Tests weighted RRF fusion, graph node conversion, channel fan-out,
partial channel failure and cache reuse.
"""

import pytest

from conftest import InMemoryKnowledgeStore, ManualClock, make_context, make_contexts
from iterative_rag import hybrid_search
from iterative_rag.context_cache import SessionContextCache
from iterative_rag.hybrid_search import (
    HybridSearchCoordinator,
    apply_hybrid_ranking,
    graph_nodes_to_context,
)
from iterative_rag.models import ContextKind, ContextRetrievalOptions


def make_coordinator(store, **kwargs):
    cache = SessionContextCache(clock=ManualClock())
    return HybridSearchCoordinator(store=store, cache=cache, request_id="test", **kwargs)


# =============================================================================
# RRF FUSION
# =============================================================================

class TestRRF:
    """Tests for weighted reciprocal rank fusion."""

    def test_item_in_two_channels_ranks_first(self):
        a, b, c = make_contexts(3)
        fused = apply_hybrid_ranking({"vector": [a, b], "keyword": [c, b]})

        assert fused[0].entity_name == b.entity_name
        expected = 1.0 / 62 + 0.8 / 62
        assert fused[0].metadata["hybrid_score"] == pytest.approx(expected)
        assert fused[0].metadata["search_channels"] == ["vector", "keyword"]

    def test_scores_use_zero_based_rank(self):
        a = make_context(1)
        fused = apply_hybrid_ranking({"vector": [a]})
        assert fused[0].metadata["hybrid_score"] == pytest.approx(1.0 / 61)

    def test_ties_keep_channel_order(self):
        v, k = make_context(1), make_context(2)
        fused = apply_hybrid_ranking(
            {"keyword": [k], "vector": [v]},
            weights={"vector": 1.0, "keyword": 1.0},
        )
        # equal scores: vector is visited first regardless of dict order
        assert [c.entity_name for c in fused] == [v.entity_name, k.entity_name]

    def test_duplicate_within_channel_counts_once(self):
        a, b = make_contexts(2)
        fused = apply_hybrid_ranking({"vector": [a, b, a]})
        scores = {c.entity_name: c.metadata["hybrid_score"] for c in fused}
        assert scores[a.entity_name] == pytest.approx(1.0 / 61)
        assert len(fused) == 2

    def test_deterministic(self):
        channels = {"vector": make_contexts(4), "keyword": make_contexts(4, start=2), "graph": make_contexts(2, start=5)}
        first = [c.dedup_key for c in apply_hybrid_ranking(channels)]
        second = [c.dedup_key for c in apply_hybrid_ranking(channels)]
        assert first == second

    def test_relevance_preserved(self):
        a = make_context(1, relevance=0.33)
        fused = apply_hybrid_ranking({"vector": [a], "keyword": [a]})
        assert fused[0].relevance_score == 0.33


# =============================================================================
# GRAPH NODES
# =============================================================================

class TestGraphNodes:
    """Tests for knowledge-graph node conversion."""

    def test_observations_become_content(self):
        items = graph_nodes_to_context([
            {"name": "SessionManager", "entityType": "class", "observations": ["refreshes tokens", "owns cache"]},
            {"observations": ["nameless nodes are skipped"]},
        ])
        assert len(items) == 1
        item = items[0]
        assert item.kind == ContextKind.GRAPH_NODE
        assert item.source_path == "kg://SessionManager"
        assert item.content == "refreshes tokens\nowns cache"
        assert item.relevance_score == 0.5
        assert item.metadata["node_type"] == "class"


# =============================================================================
# COORDINATOR
# =============================================================================

class TestCoordinator:
    """Tests for channel fan-out through the coordinator."""

    @pytest.mark.asyncio
    async def test_vector_only_when_not_hybrid(self):
        store = InMemoryKnowledgeStore(default=make_contexts(2))
        result = await make_coordinator(store).retrieve("agent", "token refresh", ContextRetrievalOptions(), hybrid=False)

        assert [call["channel"] for call in store.calls] == ["vector"]
        assert len(result.items) == 2
        assert result.hybrid is False
        assert all(item.metadata["search_channel"] == "vector" for item in result.items)

    @pytest.mark.asyncio
    async def test_hybrid_with_graph(self):
        store = InMemoryKnowledgeStore(
            default=make_contexts(2),
            graph_nodes=[{"name": "SessionManager", "observations": ["refresh"]}],
        )
        result = await make_coordinator(store).retrieve(
            "agent", "How does token refresh work?", ContextRetrievalOptions(), hybrid=True, include_graph=True
        )

        channels = sorted(call["channel"] for call in store.calls)
        assert channels == ["graph", "keyword", "vector"]
        keyword_query = store.queries("keyword")[0]
        assert keyword_query == "token refresh work"
        assert result.graph_used is True
        assert len(result.items) == 3

    @pytest.mark.asyncio
    async def test_failed_channel_does_not_fail_search(self, monkeypatch):
        messages = []
        monkeypatch.setattr(hybrid_search.logger, "info", messages.append)
        store = InMemoryKnowledgeStore(default=make_contexts(2), fail_channels=["keyword"])
        result = await make_coordinator(store).retrieve("agent", "token refresh", ContextRetrievalOptions(), hybrid=True)

        assert result.failed_channels == ["keyword"]
        assert len(result.items) == 2
        assert result.to_dict() == {
            "items": 2,
            "channel_counts": {"vector": 2, "keyword": 0},
            "failed_channels": ["keyword"],
            "hybrid": True,
            "graph_used": False,
        }
        assert messages == [f"[test] Retrieved for 'token refresh': {result.to_dict()}"]

    @pytest.mark.asyncio
    async def test_repeat_query_served_from_cache(self):
        store = InMemoryKnowledgeStore(default=make_contexts(2))
        coordinator = make_coordinator(store)
        options = ContextRetrievalOptions()

        await coordinator.retrieve("agent", "token refresh", options, hybrid=False)
        await coordinator.retrieve("agent", "token refresh", options, hybrid=False)

        assert len(store.calls) == 1
        assert coordinator.cache.stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_retrieve_many_keeps_query_order(self):
        store = InMemoryKnowledgeStore(results={
            "first": make_contexts(1),
            "second": make_contexts(2, start=5),
        })
        results = await make_coordinator(store).retrieve_many(
            "agent", ["first", "second"], ContextRetrievalOptions(), hybrid=False
        )
        assert [len(r.items) for r in results] == [1, 2]
