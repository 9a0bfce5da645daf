"""
Iterative RAG API Endpoints
Multi-turn codebase question answering for AI agents
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from config.settings import get_settings
from core.exceptions import AppException
from iterative_rag import (
    HttpKnowledgeStore,
    IterativeRagOrchestrator,
    IterativeRagRequest,
    IterativeRagResult,
    OllamaOracle,
    RagConfig,
    TavilyWebSearch,
)

logger = logging.getLogger("rag_server.api.rag")

router = APIRouter(prefix="/api/v1/rag", tags=["Iterative RAG"])

_orchestrator: Optional[IterativeRagOrchestrator] = None


def build_orchestrator() -> IterativeRagOrchestrator:
    """Wire the HTTP adapters from settings"""
    settings = get_settings()
    web_search = TavilyWebSearch(
        api_key=settings.tavily_api_key,
        search_depth=settings.tavily_search_depth,
        max_results=settings.tavily_max_results,
        mock_mode=settings.tavily_mock_mode,
        timeout=settings.web_search_timeout_seconds or 30.0,
    )
    return IterativeRagOrchestrator(
        store=HttpKnowledgeStore(settings.knowledge_store_url, settings.knowledge_store_timeout),
        oracle=OllamaOracle(
            base_url=settings.oracle_base_url,
            default_model=settings.oracle_model,
            temperature=settings.oracle_temperature,
            max_tokens=settings.oracle_max_tokens,
            timeout=settings.oracle_timeout_seconds or 120.0,
        ),
        web_search=web_search if web_search.available else None,
        config=RagConfig.from_settings(settings),
    )


async def get_orchestrator() -> IterativeRagOrchestrator:
    """Get or create the shared orchestrator (stateless across requests)"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
        logger.info(
            f"Iterative RAG orchestrator initialized "
            f"(web search {'enabled' if _orchestrator.web_search else 'disabled'})"
        )
    return _orchestrator


async def close_orchestrator():
    """Release adapter HTTP clients on shutdown"""
    global _orchestrator
    if _orchestrator is None:
        return
    for adapter in (_orchestrator.store, _orchestrator.oracle, _orchestrator.web_search):
        close = getattr(adapter, "close", None)
        if close is not None:
            await close()
    _orchestrator = None


@router.post("/iterative", response_model=IterativeRagResult)
async def iterative_search(
    request: IterativeRagRequest,
    orchestrator: IterativeRagOrchestrator = Depends(get_orchestrator),
):
    """
    Answer a question by iteratively searching the agent's codebase memory.

    The response always carries the accumulated context and search metrics;
    final_answer is null when the oracle was unavailable, and
    search_metrics.termination_reason explains why the loop stopped.
    """
    logger.info(f"Iterative RAG request for agent {request.agent_id}: {request.query[:50]}...")

    try:
        return await orchestrator.perform_iterative_search(request)
    except AppException:
        raise
    except Exception as e:
        logger.error(f"Iterative RAG failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=f"Iterative search failed: {str(e)}"
        )


@router.get("/config")
async def get_rag_config(
    orchestrator: IterativeRagOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Effective loop thresholds and limits"""
    config = orchestrator.config
    return {
        "quality_gate": {
            "quality_threshold": config.gate.quality_threshold,
            "low_context_count": config.gate.low_context_count,
            "low_confidence_threshold": config.gate.low_confidence_threshold,
            "citation_quality_threshold": config.gate.citation_quality_threshold,
        },
        "loop": {
            "repeated_query_limit": config.repeated_query_limit,
            "stable_turn_limit": config.stable_turn_limit,
            "max_accumulated_context": config.max_accumulated_context,
            "diversity_threshold": config.diversity_threshold,
        },
        "cache": {
            "ttl_seconds": config.cache_ttl_seconds,
            "max_entries": config.cache_max_entries,
            "evict_fraction": config.cache_evict_fraction,
        },
        "hybrid": {
            "rrf_k": config.rrf_k,
            "channel_weights": config.channel_weights,
        },
        "web_search_available": orchestrator.web_search is not None,
    }
