"""
HTTP client for the codebase knowledge store.

Translates the KnowledgeStore interface onto the storage service's REST
endpoints. Embedding computation and graph storage live behind that service;
this module only moves requests and normalizes the returned items.

Usage:
    from iterative_rag.knowledge_store import HttpKnowledgeStore

    async with HttpKnowledgeStore("http://localhost:8002") as store:
        items = await store.retrieve_context("agent-1", "token refresh", options)
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from core.exceptions import RetrievalChannelError
from .models import ContextRetrievalOptions, RetrievedContext

logger = logging.getLogger("iterative_rag.knowledge_store")


def _normalize_item(raw: Dict[str, Any]) -> Optional[RetrievedContext]:
    """Accept snake_case or camelCase payloads from the store."""
    source_path = raw.get("source_path") or raw.get("sourcePath") or raw.get("file_path")
    if not source_path:
        return None
    return RetrievedContext(
        kind=raw.get("kind") or raw.get("type"),
        source_path=source_path,
        entity_name=raw.get("entity_name") or raw.get("entityName"),
        content=raw.get("content") or raw.get("chunk_text") or "",
        relevance_score=raw.get("relevance_score", raw.get("relevanceScore", raw.get("score"))),
        metadata=raw.get("metadata") or {},
    )


class HttpKnowledgeStore:
    """
    KnowledgeStore implementation backed by the storage service.

    Endpoints:
        POST {base_url}/api/v1/context/retrieve
        POST {base_url}/api/v1/graph/query
    """

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, path: str, payload: Dict[str, Any], channel: str) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            raise RetrievalChannelError(channel, f"request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise RetrievalChannelError(
                channel,
                f"HTTP {e.response.status_code}",
                status=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise RetrievalChannelError(channel, str(e)) from e

    async def retrieve_context(
        self,
        agent_id: str,
        query: str,
        options: ContextRetrievalOptions,
    ) -> List[RetrievedContext]:
        channel = options.channel or "vector"
        payload = {
            "agent_id": agent_id,
            "query": query,
            "options": options.model_dump(exclude_none=True),
        }
        data = await self._post("/api/v1/context/retrieve", payload, channel)

        raw_items = data.get("contexts", []) if isinstance(data, dict) else data
        items = []
        for raw in raw_items or []:
            if not isinstance(raw, dict):
                continue
            item = _normalize_item(raw)
            if item is not None:
                items.append(item)

        logger.debug(f"Knowledge store returned {len(items)} items for {channel} query: {query[:60]}")
        return items

    async def query_graph_natural_language(self, agent_id: str, query: str) -> Dict[str, Any]:
        payload = {"agent_id": agent_id, "query": query}
        data = await self._post("/api/v1/graph/query", payload, "graph")
        if not isinstance(data, dict):
            return {"nodes": []}
        return {"nodes": data.get("nodes") or data.get("results") or []}
