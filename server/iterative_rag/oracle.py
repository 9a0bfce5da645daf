"""
Ollama-compatible oracle client.

Implements the Oracle interface on top of ``POST /api/generate``. Transport
failures are classified into the oracle error taxonomy so the orchestrator
can terminate with an explained reason.

Usage:
    from iterative_rag.oracle import OllamaOracle

    oracle = OllamaOracle("http://localhost:11434", default_model="qwen3:8b")
    response = await oracle.ask("Summarize this module", system_instruction="Be brief")
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx

from core.exceptions import (
    OracleError,
    OracleNotInitializedError,
    OracleQuotaExceededError,
    OracleTimeoutError,
)
from .protocols import OracleResponse

logger = logging.getLogger("iterative_rag.oracle")


class OllamaOracle:
    """Oracle backed by an Ollama (or compatible) generate endpoint."""

    def __init__(
        self,
        base_url: Optional[str],
        default_model: Optional[str],
        temperature: float = 0.2,
        max_tokens: int = 2048,
        timeout: float = 120.0,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
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

    async def ask(
        self,
        prompt: str,
        model: Optional[str] = None,
        system_instruction: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> OracleResponse:
        """
        Generate a completion.

        Args:
            prompt: The prompt to complete
            model: Model override (defaults to the configured model)
            system_instruction: Optional system prompt
            extra: Additional Ollama options merged into ``options``

        Returns:
            OracleResponse with the generated text
        """
        model_name = model or self.default_model
        if not self.base_url or not model_name:
            raise OracleNotInitializedError("Oracle endpoint or model is not configured")

        payload: Dict[str, Any] = {
            "model": model_name,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
                **(extra or {}),
            },
        }
        if system_instruction:
            payload["system"] = system_instruction

        start_time = time.time()
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.TimeoutException as e:
            raise OracleTimeoutError(f"Oracle call timed out: {e}", timeout_seconds=self.timeout) from e
        except httpx.ConnectError as e:
            raise OracleNotInitializedError(f"Oracle endpoint unreachable: {e}") from e
        except httpx.HTTPError as e:
            raise OracleError(str(e)) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise OracleQuotaExceededError(
                "Oracle rate limit or quota exhausted",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code == 404:
            raise OracleNotInitializedError(f"Model '{model_name}' is not available")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise OracleError(f"HTTP {response.status_code}", status=response.status_code) from e

        try:
            data = response.json()
        except ValueError as e:
            raise OracleError(f"Oracle returned a non-JSON body: {e}") from e
        if not isinstance(data, dict):
            raise OracleError(f"Oracle returned unexpected payload type {type(data).__name__}")

        latency_ms = (time.time() - start_time) * 1000
        logger.debug(f"Oracle {model_name} responded in {latency_ms:.0f}ms")

        return OracleResponse(
            content=data.get("response", ""),
            model=model_name,
            raw_response=data,
        )
