"""
Iterative RAG Server API Module
REST API endpoints for agent-facing codebase question answering
"""

from .health import router as health_router
from .rag import router as rag_router

__all__ = [
    "health_router",
    "rag_router",
]
