"""
Iterative RAG Server Main Application
FastAPI server answering agent questions over codebase memory
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

# Import configuration and setup
from config import settings, setup_logging
from config.settings import validate_production_config
from core.exceptions import AppException, ErrorCode

# Import API routers
from api.health import router as health_router
from api.rag import close_orchestrator, get_orchestrator, router as rag_router

# Configure logging
setup_logging()
logger = logging.getLogger("rag_server")


# Lifespan event handler for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events
    """
    # Startup
    logger.info("Starting Iterative RAG Server")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Oracle: {settings.oracle_base_url} ({settings.oracle_model})")
    logger.info(f"Knowledge store: {settings.knowledge_store_url}")

    if settings.environment == "production":
        validate_production_config()

    await get_orchestrator()

    try:
        yield
    finally:
        # Shutdown
        logger.info("Shutting down Iterative RAG Server")
        await close_orchestrator()
        logger.info("Adapter connections closed")


# Create FastAPI application
app = FastAPI(
    title="Iterative RAG Server",
    description="Multi-turn retrieval-augmented answering over codebase memory",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


# Include API routers
app.include_router(health_router)
app.include_router(rag_router)
logger.info("Iterative RAG endpoints enabled at /api/v1/rag/*")


# =============================================================================
# Exception Handlers - Unified Response Format
# =============================================================================

def _error_meta(request: Request) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
        "path": str(request.url.path)
    }


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """
    Handle all AppException instances with unified response format.

    Response format:
    {
        "success": false,
        "data": null,
        "meta": {"timestamp": "...", "request_id": "...", "path": "..."},
        "errors": [{"code": "ERR_xxxx", "message": "...", "details": {...}}]
    }
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "data": None,
            "meta": _error_meta(request),
            "errors": [exc.to_dict()]
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    Logs the error and returns unified error response format.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    error_details = {"type": type(exc).__name__}
    if settings.debug:
        error_details["detail"] = str(exc)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "data": None,
            "meta": _error_meta(request),
            "errors": [{
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred" if not settings.debug else str(exc),
                "details": error_details
            }]
        }
    )


if __name__ == "__main__":
    # Run the server
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
        access_log=True
    )
