"""
Unified exception handling for the iterative RAG server.

The orchestrator never lets these escape ``perform_iterative_search``; they
are raised by the collaborator adapters (oracle, knowledge store, web search)
and classified by the loop into explained termination reasons. The HTTP
layer renders any that reach it with the unified error envelope.

Usage:
    from core.exceptions import AppException, ErrorCode, OracleQuotaExceededError

    # Raise a quota error from an oracle adapter
    raise OracleQuotaExceededError("daily token budget exhausted", retry_after=60)

    # Raise a custom error
    raise AppException(
        code=ErrorCode.INTERNAL_ERROR,
        message="Something went wrong",
        status_code=500,
        details={"component": "orchestrator"}
    )
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """
    Standardized error codes across all endpoints.

    Code ranges:
    - 4xxx: Retrieval/RAG errors
    - 5xxx: External service errors (oracle, knowledge store, web search)
    - 9xxx: System errors (internal, configuration)
    """

    # Retrieval/RAG errors (4xxx)
    RETRIEVAL_FAILED = "ERR_4001"

    # External service errors (5xxx)
    ORACLE_ERROR = "ERR_5001"
    ORACLE_NOT_INITIALIZED = "ERR_5002"
    ORACLE_QUOTA_EXCEEDED = "ERR_5003"
    ORACLE_TIMEOUT = "ERR_5004"
    KNOWLEDGE_STORE_ERROR = "ERR_5005"
    WEB_SEARCH_ERROR = "ERR_5006"

    # System errors (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    CONFIGURATION_ERROR = "ERR_9005"


class AppException(Exception):
    """
    Base exception for all application errors.

    Provides unified error response format:
    {
        "success": false,
        "data": null,
        "meta": {...},
        "errors": [{"code": "ERR_xxxx", "message": "...", "details": {...}}]
    }

    Args:
        code: ErrorCode enum value
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        details: Additional error context (optional)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to error response format."""
        result = {
            "code": self.code.value,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Convenience subclasses for common error types
# =============================================================================

class ExternalServiceError(AppException):
    """Raised when an external collaborator (oracle, knowledge store, web search) fails."""

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[ErrorCode] = None,
        status_code: int = 502,
        **details
    ):
        # Auto-detect error code based on service name
        if code is None:
            code_map = {
                "oracle": ErrorCode.ORACLE_ERROR,
                "ollama": ErrorCode.ORACLE_ERROR,
                "knowledge_store": ErrorCode.KNOWLEDGE_STORE_ERROR,
                "tavily": ErrorCode.WEB_SEARCH_ERROR,
                "web_search": ErrorCode.WEB_SEARCH_ERROR,
            }
            code = code_map.get(service.lower(), ErrorCode.INTERNAL_ERROR)

        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            status_code=status_code,
            details={"service": service, **details}
        )


class OracleError(ExternalServiceError):
    """Generic language-model oracle failure."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.ORACLE_ERROR,
        status_code: int = 502,
        **details
    ):
        super().__init__(
            service="oracle",
            message=message,
            code=code,
            status_code=status_code,
            **details
        )


class OracleNotInitializedError(OracleError):
    """Oracle is missing or misconfigured (no endpoint, unknown model)."""

    def __init__(self, message: str = "Oracle is not initialized", **details):
        super().__init__(
            message=message,
            code=ErrorCode.ORACLE_NOT_INITIALIZED,
            status_code=503,
            **details
        )


class OracleQuotaExceededError(OracleError):
    """Oracle rejected the call because a rate or token quota is exhausted."""

    def __init__(
        self,
        message: str = "Oracle quota exceeded",
        retry_after: Optional[int] = None,
        **details
    ):
        super().__init__(
            message=message,
            code=ErrorCode.ORACLE_QUOTA_EXCEEDED,
            status_code=429,
            **({"retry_after": retry_after, **details} if retry_after else details)
        )


class OracleTimeoutError(OracleError):
    """Oracle call exceeded its deadline."""

    def __init__(
        self,
        message: str = "Oracle call timed out",
        timeout_seconds: Optional[float] = None,
        **details
    ):
        super().__init__(
            message=message,
            code=ErrorCode.ORACLE_TIMEOUT,
            status_code=504,
            timeout_seconds=timeout_seconds,
            **details
        )


class RetrievalChannelError(ExternalServiceError):
    """A single retrieval channel (vector, keyword, graph) failed."""

    def __init__(
        self,
        channel: str,
        message: str,
        code: ErrorCode = ErrorCode.RETRIEVAL_FAILED,
        **details
    ):
        super().__init__(
            service="knowledge_store",
            message=message,
            code=code,
            channel=channel,
            **details
        )


class WebSearchError(ExternalServiceError):
    """Raised when the web-search provider fails."""

    def __init__(self, message: str, provider: str = "tavily", **details):
        super().__init__(
            service=provider,
            message=message,
            code=ErrorCode.WEB_SEARCH_ERROR,
            **details
        )


class ConfigurationError(AppException):
    """Raised when settings are inconsistent or a collaborator is not configured."""

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        **details
    ):
        super().__init__(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=message,
            status_code=500,
            details={"setting": setting, **details} if setting else details
        )
