"""
Health Check API Endpoints for the Iterative RAG Server
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from config.settings import get_settings

logger = logging.getLogger("rag_server.api.health")

router = APIRouter(prefix="/api/v1/health", tags=["health"])


async def _probe(url: str, timeout: float = 3.0) -> bool:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(url)
            return response.status_code < 500
    except httpx.HTTPError as e:
        logger.debug(f"Health probe {url} failed: {e}")
        return False


@router.get("/")
async def health_check() -> JSONResponse:
    """
    Health of the server and its collaborators.

    The oracle is required for answers; the knowledge store and web search
    degrade the result but never fail a request.
    """
    settings = get_settings()
    oracle_ok = await _probe(f"{settings.oracle_base_url}/api/tags")
    store_ok = await _probe(f"{settings.knowledge_store_url}/health")

    health_status: Dict[str, Any] = {
        "status": "healthy" if oracle_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "environment": settings.environment,
        "services": {
            "oracle": {
                "status": "healthy" if oracle_ok else "unavailable",
                "url": settings.oracle_base_url,
                "model": settings.oracle_model,
            },
            "knowledge_store": {
                "status": "healthy" if store_ok else "degraded",
                "url": settings.knowledge_store_url,
            },
            "web_search": {
                "status": "mock" if settings.tavily_mock_mode else (
                    "enabled" if settings.tavily_api_key else "disabled"
                ),
            },
        },
    }
    return JSONResponse(content=health_status, status_code=200 if oracle_ok else 503)
