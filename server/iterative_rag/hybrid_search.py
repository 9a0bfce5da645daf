"""
Hybrid Search Coordinator: Vector + Keyword + Graph Retrieval

Runs up to three retrieval channels concurrently against the knowledge store
and merges them with weighted Reciprocal Rank Fusion:

    score(item) = sum over channels of  w_channel * 1 / (k + rank + 1)

with 0-based rank and k = 60. Items are identified by their dedup key; the
fused list is sorted by score descending, ties keeping first-seen order in
channel order vector -> keyword -> graph.

A failing channel contributes nothing; the other channels still fuse.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.exceptions import RetrievalChannelError
from .context_cache import SessionContextCache
from .models import ContextKind, ContextRetrievalOptions, RetrievedContext
from .protocols import KnowledgeStore, Oracle, call_with_deadline
from .quality_gate import extract_query_terms

logger = logging.getLogger("iterative_rag.hybrid_search")

CHANNEL_ORDER = ("vector", "keyword", "graph")

DEFAULT_CHANNEL_WEIGHTS = {
    "vector": 1.0,
    "keyword": 0.8,
    "graph": 0.9,
}

KeywordExtractor = Callable[[str], Awaitable[List[str]]]


def naive_keywords(query: str) -> List[str]:
    """Whitespace tokenization, used when term extraction yields nothing"""
    return [w for w in query.lower().split() if w]


async def default_keyword_extractor(query: str) -> List[str]:
    return extract_query_terms(query)


class OracleKeywordExtractor:
    """Asks the oracle for search keywords; falls back to naive tokens"""

    def __init__(self, oracle: Oracle, model: Optional[str] = None, timeout: Optional[float] = None):
        self.oracle = oracle
        self.model = model
        self.timeout = timeout

    async def __call__(self, query: str) -> List[str]:
        from .prompts import build_keyword_extraction_prompt

        try:
            response = await call_with_deadline(
                self.oracle.ask(build_keyword_extraction_prompt(query), model=self.model),
                self.timeout,
            )
        except Exception as e:
            logger.warning(f"Keyword extraction via oracle failed: {e}")
            return naive_keywords(query)

        keywords = [
            k.strip().strip("\"'").lower()
            for k in response.content.replace("\n", ",").split(",")
        ]
        keywords = [k for k in keywords if k]
        return keywords[:10] or naive_keywords(query)


def graph_nodes_to_context(nodes: Sequence[Any]) -> List[RetrievedContext]:
    """Convert knowledge-graph nodes into graph_node context items"""
    items = []
    for node in nodes:
        if not isinstance(node, dict):
            continue
        name = node.get("name") or node.get("entity_name") or node.get("id")
        if not name:
            continue
        observations = node.get("observations") or []
        if isinstance(observations, list) and observations:
            content = "\n".join(str(o) for o in observations)
        else:
            content = str(node.get("content") or node.get("description") or "")
        items.append(RetrievedContext(
            kind=ContextKind.GRAPH_NODE,
            source_path=node.get("source_path") or node.get("file_path") or f"kg://{name}",
            entity_name=str(name),
            content=content,
            relevance_score=node.get("relevance_score", node.get("score")),
            metadata={
                "node_type": node.get("entityType") or node.get("type"),
                "search_channel": "graph",
            },
        ))
    return items


def apply_hybrid_ranking(
    channel_results: Dict[str, List[RetrievedContext]],
    weights: Optional[Dict[str, float]] = None,
    k: int = 60,
) -> List[RetrievedContext]:
    """
    Weighted RRF over per-channel ranked lists.

    Provider relevance is preserved; the fused score and the contributing
    channels are written to metadata["hybrid_score"] / ["search_channels"].
    A key repeated within one channel only counts at its best rank.
    """
    weights = weights or DEFAULT_CHANNEL_WEIGHTS
    scores: Dict[str, float] = {}
    first_seen: Dict[str, RetrievedContext] = {}
    contributors: Dict[str, List[str]] = {}

    ordered_channels = [c for c in CHANNEL_ORDER if c in channel_results]
    ordered_channels += [c for c in channel_results if c not in CHANNEL_ORDER]

    for channel in ordered_channels:
        weight = weights.get(channel, 1.0)
        for rank, item in enumerate(channel_results[channel]):
            key = item.dedup_key
            if channel in contributors.get(key, []):
                continue
            if key not in first_seen:
                first_seen[key] = item
                scores[key] = 0.0
                contributors[key] = []
            scores[key] += weight * (1.0 / (k + rank + 1))
            contributors[key].append(channel)

    # sorted() is stable; first_seen preserves insertion order
    ranked_keys = sorted(first_seen.keys(), key=lambda key: -scores[key])
    return [
        first_seen[key].model_copy(update={
            "metadata": {
                **first_seen[key].metadata,
                "hybrid_score": scores[key],
                "search_channels": list(contributors[key]),
            }
        })
        for key in ranked_keys
    ]


@dataclass
class HybridSearchResult:
    """Fused items plus per-channel bookkeeping"""
    items: List[RetrievedContext]
    channel_counts: Dict[str, int] = field(default_factory=dict)
    failed_channels: List[str] = field(default_factory=list)
    hybrid: bool = False
    graph_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": len(self.items),
            "channel_counts": self.channel_counts,
            "failed_channels": self.failed_channels,
            "hybrid": self.hybrid,
            "graph_used": self.graph_used,
        }


class HybridSearchCoordinator:
    """
    Retrieval front door for the orchestrator.

    All knowledge-store calls go through the session cache. Channels are
    fanned out with an explicit join barrier and merged afterwards by the
    calling coroutine.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        cache: SessionContextCache,
        weights: Optional[Dict[str, float]] = None,
        rrf_k: int = 60,
        keyword_extractor: Optional[KeywordExtractor] = None,
        timeout: Optional[float] = None,
        request_id: str = "-",
    ):
        self.store = store
        self.cache = cache
        self.weights = weights or dict(DEFAULT_CHANNEL_WEIGHTS)
        self.rrf_k = rrf_k
        self.keyword_extractor = keyword_extractor or default_keyword_extractor
        self.timeout = timeout
        self.request_id = request_id

    async def _extract_keyword_query(self, query: str) -> str:
        try:
            terms = await self.keyword_extractor(query)
        except Exception as e:
            logger.warning(f"[{self.request_id}] Keyword extraction failed, using naive tokens: {e}")
            terms = []
        if not terms:
            terms = naive_keywords(query)
        return " ".join(terms)

    async def _fetch(
        self,
        agent_id: str,
        channel: str,
        query: str,
        options: ContextRetrievalOptions,
    ) -> List[RetrievedContext]:
        channel_options = options.model_copy(update={"channel": channel})
        cached = self.cache.get(query, channel_options)
        if cached is not None:
            return cached

        try:
            if channel == "graph":
                graph = await call_with_deadline(
                    self.store.query_graph_natural_language(agent_id, query),
                    self.timeout,
                )
                items = graph_nodes_to_context((graph or {}).get("nodes", []))
            else:
                items = await call_with_deadline(
                    self.store.retrieve_context(agent_id, query, channel_options),
                    self.timeout,
                )
        except asyncio.TimeoutError as e:
            raise RetrievalChannelError(channel, f"timed out after {self.timeout}s") from e

        items = [
            item if item.metadata.get("search_channel") else item.model_copy(
                update={"metadata": {**item.metadata, "search_channel": channel}}
            )
            for item in (items or [])
        ]
        self.cache.put(query, channel_options, items)
        return items

    async def retrieve(
        self,
        agent_id: str,
        query: str,
        options: ContextRetrievalOptions,
        hybrid: bool = True,
        include_graph: bool = False,
    ) -> HybridSearchResult:
        """
        Retrieve for one query.

        hybrid=False runs the vector channel alone (no fusion); otherwise
        vector and keyword run together, plus graph when include_graph.
        """
        if not hybrid:
            channels = ["vector"]
        else:
            channels = ["vector", "keyword"] + (["graph"] if include_graph else [])

        queries = {}
        for channel in channels:
            queries[channel] = await self._extract_keyword_query(query) if channel == "keyword" else query

        outcomes = await asyncio.gather(
            *(self._fetch(agent_id, channel, queries[channel], options) for channel in channels),
            return_exceptions=True,
        )

        channel_results: Dict[str, List[RetrievedContext]] = {}
        failed: List[str] = []
        for channel, outcome in zip(channels, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"[{self.request_id}] {channel} channel failed: {outcome}")
                failed.append(channel)
                channel_results[channel] = []
            else:
                channel_results[channel] = outcome

        if hybrid:
            items = apply_hybrid_ranking(channel_results, self.weights, self.rrf_k)
        else:
            items = channel_results.get("vector", [])

        result = HybridSearchResult(
            items=items,
            channel_counts={channel: len(results) for channel, results in channel_results.items()},
            failed_channels=failed,
            hybrid=hybrid,
            graph_used="graph" in channels,
        )
        logger.info(f"[{self.request_id}] Retrieved for '{query[:60]}': {result.to_dict()}")
        return result

    async def retrieve_many(
        self,
        agent_id: str,
        queries: Sequence[str],
        options: ContextRetrievalOptions,
        hybrid: bool = True,
        include_graph: bool = False,
    ) -> List[HybridSearchResult]:
        """Retrieve several queries concurrently; results in query order"""
        outcomes = await asyncio.gather(
            *(self.retrieve(agent_id, q, options, hybrid, include_graph) for q in queries),
            return_exceptions=True,
        )
        results = []
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"[{self.request_id}] Retrieval for '{query[:60]}' failed: {outcome}")
                results.append(HybridSearchResult(items=[], failed_channels=["all"]))
            else:
                results.append(outcome)
        return results
