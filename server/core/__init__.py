"""
Iterative RAG Server Core Components
Shared error taxonomy for the orchestrator, adapters and HTTP layer
"""

from .exceptions import (
    AppException,
    ConfigurationError,
    ErrorCode,
    ExternalServiceError,
    OracleError,
    OracleNotInitializedError,
    OracleQuotaExceededError,
    OracleTimeoutError,
    RetrievalChannelError,
    WebSearchError,
)

__all__ = [
    "AppException",
    "ConfigurationError",
    "ErrorCode",
    "ExternalServiceError",
    "OracleError",
    "OracleNotInitializedError",
    "OracleQuotaExceededError",
    "OracleTimeoutError",
    "RetrievalChannelError",
    "WebSearchError",
]
