"""
Chat-completions transport for OpenAI-compatible endpoints.

POSTs ``{endpoint}/chat/completions`` with httpx and returns the first
choice's text. Transport errors (connect/read failures, timeouts) are retried
with tenacity; HTTP error statuses and malformed bodies are not. Every
failure surfaces as ``LLMError`` so the backend adapter has a single
exception type to convert into ``Err``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pingq.config import LLM_MAX_RETRIES, LLM_RETRY_MAX_DELAY, LLM_TIMEOUT_SECONDS
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter, time_block

logger = get_logger(__name__)


class LLMError(RuntimeError):
    """Raised when an LLM call fails (network, HTTP status, timeout, empty reply)."""


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CompletionRequest:
    """Connection parameters captured at call time; later settings changes do not affect it."""

    endpoint: str
    model: str
    api_key: str = ""
    timeout_seconds: float = LLM_TIMEOUT_SECONDS


@dataclass(frozen=True)
class Completion:
    text: str
    model: str | None = None


class CompletionTransport(Protocol):
    async def complete(
        self,
        request: CompletionRequest,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Completion: ...


def completions_url(endpoint: str) -> str:
    return f"{endpoint.rstrip('/')}/chat/completions"


def build_headers(api_key: str) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if api_key and api_key.strip():
        headers["Authorization"] = f"Bearer {api_key.strip()}"
    return headers


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error or payload)[:200]


class ChatCompletionsClient:
    """httpx-backed transport speaking the chat-completions protocol."""

    def __init__(
        self,
        max_attempts: int = LLM_MAX_RETRIES,
        http_transport: httpx.AsyncBaseTransport | None = None,
        retry_max_delay: float = LLM_RETRY_MAX_DELAY,
    ):
        self.max_attempts = max(1, max_attempts)
        self.retry_max_delay = retry_max_delay
        self._http_transport = http_transport

    async def complete(
        self,
        request: CompletionRequest,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        """
        Send one completion request, retrying transport errors.

        Raises:
            LLMError: On any failure after retries are exhausted

        Side Effects:
            - HTTP POST to the configured endpoint
            - Increments llm.http.* counters
        """
        if not request.endpoint.strip():
            raise LLMError("API endpoint is not configured")

        body = {
            "model": request.model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=self.retry_max_delay),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )

        try:
            with time_block("llm.http.latency"):
                async for attempt in retrying:
                    with attempt:
                        payload = await self._post(request, body)
        except httpx.TimeoutException as exc:
            counter("llm.http.timeout")
            raise LLMError(f"request timed out after {request.timeout_seconds}s") from exc
        except httpx.TransportError as exc:
            counter("llm.http.transport_error")
            raise LLMError(f"transport error: {exc}") from exc

        return self._parse(payload)

    async def _post(self, request: CompletionRequest, body: dict[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=request.timeout_seconds, transport=self._http_transport
        ) as client:
            response = await client.post(
                completions_url(request.endpoint),
                headers=build_headers(request.api_key),
                json=body,
            )

        if response.status_code >= 400:
            counter("llm.http.status_error")
            detail = _error_detail(response)
            logger.warning("LLM API error %s: %s", response.status_code, detail)
            raise LLMError(f"API error {response.status_code}: {detail}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMError("response body is not JSON") from exc
        if not isinstance(payload, dict):
            raise LLMError("response body is not a JSON object")
        return payload

    @staticmethod
    def _parse(payload: dict[str, Any]) -> Completion:
        choices = payload.get("choices") or []
        if not choices:
            raise LLMError("response contains no choices")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise LLMError("response choice has no message content")
        counter("llm.http.success")
        return Completion(text=content.strip(), model=payload.get("model"))
