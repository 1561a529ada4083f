"""
Generic async LLM client for the answer generator.

Design constraints:
- Do NOT use cloud-specific SDKs
- Use HTTP client (httpx) against an OpenAI-compatible API
- Failures surface as typed generator errors; the orchestrator decides how
  to degrade

Environment configuration:
- LLM_API_BASE: Base URL for API (default: https://api.openai.com/v1)
- LLM_API_KEY: API key / bearer token (unset disables the generator)
- LLM_MODEL: Model name (default: gpt-4o-mini)
- LLM_TIMEOUT_SECONDS: Request timeout in seconds (default: 3.5, keeps p95 under 5s)
"""
import time
from typing import Any, Dict, List, Optional

import httpx

from saathi.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from saathi.core.config import get_settings
from saathi.core.errors import (
    GeneratorRateLimitedError,
    GeneratorTimeoutError,
    GeneratorUnavailableError,
)
from saathi.core.logging import get_logger

logger = get_logger(__name__)


class LLMClient:
    """Async HTTP client for chat completion calls."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 3.5,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds

        self.circuit_breaker = CircuitBreaker(
            name="answer_generator",
            failure_threshold=0.5,
            window_seconds=60,
            open_seconds=30,
        )

    async def _post(self, path: str, json_payload: Dict[str, Any], timeout_seconds: float) -> httpx.Response:
        """Low-level POST helper (isolated for circuit breaker)."""
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        url = f"{self.api_base}{path}"
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.post(url, headers=headers, json=json_payload)
        response.raise_for_status()
        return response

    async def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 600,
        response_format: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Call the chat completion endpoint.

        Returns:
            Raw JSON response from the API.

        Raises:
            GeneratorRateLimitedError, GeneratorTimeoutError, GeneratorUnavailableError
        """
        if not self.api_key:
            raise GeneratorUnavailableError("LLM API key not configured")

        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.2,
            "max_tokens": max_tokens,
        }
        if response_format:
            payload["response_format"] = response_format

        timeout = timeout_seconds or self.timeout_seconds
        start = time.time()
        try:
            response: httpx.Response = await self.circuit_breaker.call_async(
                self._post,
                "/chat/completions",
                json_payload=payload,
                timeout_seconds=timeout,
            )
        except CircuitBreakerOpenError as exc:
            logger.warning("llm_circuit_open", circuit_breaker=self.circuit_breaker.name)
            raise GeneratorUnavailableError("Answer generator circuit is open") from exc
        except httpx.TimeoutException as exc:
            logger.warning("llm_timeout", timeout_seconds=timeout, error_type=type(exc).__name__)
            raise GeneratorTimeoutError() from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning("llm_http_status_error", status_code=status_code, error_type=type(exc).__name__)
            if status_code == 429:
                raise GeneratorRateLimitedError() from exc
            raise GeneratorUnavailableError() from exc
        except httpx.HTTPError as exc:
            logger.warning("llm_http_error", error=str(exc), error_type=type(exc).__name__)
            raise GeneratorUnavailableError() from exc
        finally:
            logger.debug("llm_request_finished", latency_ms=int((time.time() - start) * 1000))

        try:
            return response.json()
        except ValueError as exc:
            logger.warning("llm_invalid_response_body", error_type=type(exc).__name__)
            raise GeneratorUnavailableError() from exc


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """
    Get global LLM client instance.

    Provider-agnostic: assumes an OpenAI-compatible /chat/completions API but
    does not rely on any SDKs.
    """
    global _llm_client
    if _llm_client is None:
        settings = get_settings()
        _llm_client = LLMClient(
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    return _llm_client
