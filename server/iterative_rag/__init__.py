"""
Iterative RAG Module

Multi-turn retrieval-augmented answering over a codebase knowledge store:
- Orchestrator: retrieve -> analyze -> decide loop with guaranteed termination
- Hybrid search: vector, keyword and graph channels fused with weighted RRF
- Context flow: recency-aware ordering and long-item chunking for prompts
- Citations: stable [n] ids and answer citation validation
- Quality gate: overrides premature ANSWER decisions
- Planning: optional agentic plans, reflection and corrective queries
- DMQR: diverse multi-query rewriting for the first turn

External collaborators (knowledge store, oracle, web search) are injected
through the protocols in protocols.py; HTTP adapters are provided for each.
"""

from .models import (
    ContextKind,
    ContextRetrievalOptions,
    Citation,
    Decision,
    DecisionType,
    IterativeRagRequest,
    IterativeRagResult,
    RetrievedContext,
    SearchMetrics,
    SearchStrategy,
    TurnType,
)
from .protocols import KnowledgeStore, Oracle, OracleResponse, WebSearchProvider
from .knowledge_store import HttpKnowledgeStore
from .oracle import OllamaOracle
from .web_search import TavilyWebSearch
from .orchestrator import IterativeRagOrchestrator, RagConfig

__all__ = [
    # Models
    "ContextKind",
    "ContextRetrievalOptions",
    "Citation",
    "Decision",
    "DecisionType",
    "IterativeRagRequest",
    "IterativeRagResult",
    "RetrievedContext",
    "SearchMetrics",
    "SearchStrategy",
    "TurnType",
    # Collaborators
    "KnowledgeStore",
    "Oracle",
    "OracleResponse",
    "WebSearchProvider",
    "HttpKnowledgeStore",
    "OllamaOracle",
    "TavilyWebSearch",
    # Orchestrator
    "IterativeRagOrchestrator",
    "RagConfig",
]
