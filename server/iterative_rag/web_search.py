"""
Tavily web search provider.

Used by the orchestrator when the oracle decides external information is
needed. Failures raise WebSearchError; the orchestrator demotes the turn to
a codebase search.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.exceptions import WebSearchError
from .models import WebSearchResult

logger = logging.getLogger("iterative_rag.web_search")


class TavilyWebSearch:
    """
    Tavily search API client.

    Mock mode returns deterministic placeholder results without network
    access, for local development.
    """

    BASE_URL = "https://api.tavily.com/search"

    def __init__(
        self,
        api_key: Optional[str] = None,
        search_depth: str = "basic",
        max_results: int = 5,
        mock_mode: bool = False,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.search_depth = search_depth
        self.max_results = max_results
        self.mock_mode = mock_mode
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def available(self) -> bool:
        return self.mock_mode or bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5)
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _mock_results(self, query: str, max_results: int) -> List[WebSearchResult]:
        return [
            WebSearchResult(
                title=f"Mock result {i + 1} for {query[:40]}",
                url=f"https://example.com/search/{i + 1}",
                content=f"Placeholder web content {i + 1} describing: {query}",
                score=round(1.0 - i * 0.1, 2),
            )
            for i in range(max_results)
        ]

    async def search(
        self,
        query: str,
        options: Optional[Dict[str, Any]] = None,
    ) -> List[WebSearchResult]:
        options = options or {}
        max_results = options.get("max_results", self.max_results)

        if self.mock_mode:
            logger.debug(f"Tavily mock search for: {query[:50]}")
            return self._mock_results(query, max_results)

        if not self.api_key:
            raise WebSearchError("Tavily API key not configured")

        payload = {
            "api_key": self.api_key,
            "query": query,
            "search_depth": options.get("search_depth", self.search_depth),
            "max_results": max_results,
            "include_answer": False,
            "include_raw_content": options.get("include_raw_content", False),
        }
        if options.get("topic"):
            payload["topic"] = options["topic"]

        client = await self._get_client()
        try:
            response = await client.post(self.BASE_URL, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WebSearchError(f"HTTP {e.response.status_code}", status=e.response.status_code) from e
        except httpx.HTTPError as e:
            raise WebSearchError(str(e) or e.__class__.__name__) from e

        data = response.json()
        results = []
        for item in data.get("results", [])[:max_results]:
            if not item.get("url"):
                continue
            results.append(WebSearchResult(
                title=item.get("title", ""),
                url=item["url"],
                content=item.get("content", ""),
                score=item.get("score"),
            ))

        logger.info(f"Tavily search returned {len(results)} results for: {query[:50]}")
        return results
