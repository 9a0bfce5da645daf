"""
Shared pytest fixtures for Iterative RAG server tests.

This module provides in-memory stand-ins for the three collaborators
(knowledge store, oracle, web search) plus common sample data.
"""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pytest

# Add server directory to path
SERVER_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(SERVER_DIR))

from core.exceptions import WebSearchError  # noqa: E402
from iterative_rag.models import (  # noqa: E402
    ContextKind,
    ContextRetrievalOptions,
    RetrievedContext,
    WebSearchResult,
)
from iterative_rag.prompts import ANALYSIS_SYSTEM_INSTRUCTION, ANSWER_SYSTEM_INSTRUCTION  # noqa: E402
from iterative_rag.protocols import OracleResponse  # noqa: E402


SAMPLE_QUERY = "How does the session token refresh work?"


# ============================================
# Fake Collaborators
# ============================================

ScriptEntry = Union[str, BaseException]


class ScriptedOracle:
    """
    Oracle fake that answers by call kind.

    Decision calls (analysis system instruction) consume ``decisions`` in
    order, repeating the last entry once exhausted. Answer calls return
    ``answer``. Everything else (planning, reflection, DMQR, corrective,
    keywords) consumes ``auxiliary`` in order, returning "{}" once exhausted.
    Exceptions in a script are raised instead of returned.
    """

    def __init__(
        self,
        decisions: Optional[Sequence[ScriptEntry]] = None,
        answer: ScriptEntry = "Session tokens are refreshed by refresh_session_token [1].",
        auxiliary: Optional[Sequence[ScriptEntry]] = None,
    ):
        self.decisions = list(decisions or [])
        self.answer = answer
        self.auxiliary = list(auxiliary or [])
        self.calls: List[Dict[str, Any]] = []
        self._decision_index = 0

    def _kind(self, system_instruction: Optional[str]) -> str:
        if system_instruction == ANALYSIS_SYSTEM_INSTRUCTION:
            return "decision"
        if system_instruction == ANSWER_SYSTEM_INSTRUCTION or (
            system_instruction and "JSON" not in system_instruction
        ):
            return "answer"
        return "auxiliary"

    def count(self, kind: str) -> int:
        return sum(1 for call in self.calls if call["kind"] == kind)

    def prompts(self, kind: str) -> List[str]:
        return [call["prompt"] for call in self.calls if call["kind"] == kind]

    async def ask(self, prompt, model=None, system_instruction=None, extra=None) -> OracleResponse:
        kind = self._kind(system_instruction)
        self.calls.append({"kind": kind, "prompt": prompt, "model": model})

        if kind == "decision":
            if not self.decisions:
                raise AssertionError("no scripted decision")
            entry = self.decisions[min(self._decision_index, len(self.decisions) - 1)]
            self._decision_index += 1
        elif kind == "answer":
            entry = self.answer
        else:
            entry = self.auxiliary.pop(0) if self.auxiliary else "{}"

        if isinstance(entry, BaseException):
            raise entry
        return OracleResponse(content=entry, model=model or "scripted")


class InMemoryKnowledgeStore:
    """
    Knowledge store fake.

    ``results`` maps a query to the items every channel returns for it;
    ``resolver`` (query, channel) -> items takes precedence when given.
    Unknown queries return ``default``.
    """

    def __init__(
        self,
        results: Optional[Dict[str, List[RetrievedContext]]] = None,
        default: Optional[List[RetrievedContext]] = None,
        resolver: Optional[Callable[[str, str], List[RetrievedContext]]] = None,
        graph_nodes: Optional[List[Dict[str, Any]]] = None,
        fail_channels: Sequence[str] = (),
    ):
        self.results = results or {}
        self.default = default or []
        self.resolver = resolver
        self.graph_nodes = graph_nodes or []
        self.fail_channels = set(fail_channels)
        self.calls: List[Dict[str, Any]] = []

    async def retrieve_context(self, agent_id: str, query: str, options: ContextRetrievalOptions):
        channel = options.channel or "vector"
        self.calls.append({"agent_id": agent_id, "query": query, "channel": channel})
        if channel in self.fail_channels:
            raise RuntimeError(f"{channel} backend down")
        if self.resolver is not None:
            return list(self.resolver(query, channel))
        return list(self.results.get(query, self.default))

    async def query_graph_natural_language(self, agent_id: str, query: str):
        self.calls.append({"agent_id": agent_id, "query": query, "channel": "graph"})
        if "graph" in self.fail_channels:
            raise RuntimeError("graph backend down")
        return {"nodes": list(self.graph_nodes)}

    def queries(self, channel: str = "vector") -> List[str]:
        return [call["query"] for call in self.calls if call["channel"] == channel]


class FakeWebSearch:
    def __init__(self, results: Optional[List[WebSearchResult]] = None, error: Optional[Exception] = None):
        self.results = results or []
        self.error = error
        self.queries: List[str] = []

    async def search(self, query: str, options=None) -> List[WebSearchResult]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.results)


class ManualClock:
    """Monotonic clock the test advances by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def advance(self, seconds: float):
        self.now += seconds

    def __call__(self) -> float:
        return self.now


# ============================================
# Sample Data Helpers
# ============================================

def make_context(
    index: int,
    relevance: float = 0.85,
    kind: ContextKind = ContextKind.FUNCTION,
    path: Optional[str] = None,
    content: Optional[str] = None,
    **metadata,
) -> RetrievedContext:
    return RetrievedContext(
        kind=kind,
        source_path=path or f"src/auth/session_{index}.py",
        entity_name=f"refresh_session_token_{index}",
        content=content or (
            f"class SessionManager{index}:\n"
            f"    def refresh_session_token(self):\n"
            f"        # work out when the session token must refresh\n"
            f"        return self.issue_token()"
        ),
        relevance_score=relevance,
        metadata=metadata,
    )


def make_contexts(count: int, start: int = 0, **kwargs) -> List[RetrievedContext]:
    return [make_context(start + i, **kwargs) for i in range(count)]


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def settings():
    """Get application settings."""
    from config.settings import get_settings
    return get_settings()


@pytest.fixture
def sample_query():
    return SAMPLE_QUERY


@pytest.fixture
def context_factory():
    return make_contexts


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def web_results():
    return [
        WebSearchResult(
            title="Token refresh best practices",
            url="https://docs.example.org/auth/refresh",
            content="Refresh tokens should be rotated on every use.",
            score=0.9,
        ),
        WebSearchResult(
            title="OAuth 2.0 refresh flow",
            url="https://docs.example.org/oauth/refresh",
            content="The client exchanges a refresh token for a new access token.",
            score=0.8,
        ),
    ]


@pytest.fixture
def failing_web_search():
    return FakeWebSearch(error=WebSearchError("provider down", provider="tavily"))
