"""
Collaborator interfaces consumed by the orchestrator.

The orchestrator only ever talks to these three shapes; the HTTP adapters in
knowledge_store.py, oracle.py and web_search.py implement them, and the test
suite substitutes in-memory fakes.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

from .models import ContextRetrievalOptions, RetrievedContext, WebSearchResult

T = TypeVar("T")


async def call_with_deadline(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Await a collaborator call, bounded by timeout seconds (None or 0 disables)"""
    if not timeout:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


@dataclass
class OracleResponse:
    """Text returned by the language-model oracle."""

    content: str
    model: str = ""
    raw_response: dict = field(default_factory=dict)


@runtime_checkable
class KnowledgeStore(Protocol):
    """Codebase retrieval and knowledge-graph query surface."""

    async def retrieve_context(
        self,
        agent_id: str,
        query: str,
        options: ContextRetrievalOptions,
    ) -> List[RetrievedContext]:
        ...

    async def query_graph_natural_language(
        self,
        agent_id: str,
        query: str,
    ) -> Dict[str, Any]:
        """Returns ``{"nodes": [...]}``."""
        ...


@runtime_checkable
class Oracle(Protocol):
    """
    Opaque language model.

    Raises OracleNotInitializedError, OracleQuotaExceededError or OracleError.
    """

    async def ask(
        self,
        prompt: str,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> OracleResponse:
        ...


@runtime_checkable
class WebSearchProvider(Protocol):
    async def search(
        self,
        query: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[WebSearchResult]:
        ...
