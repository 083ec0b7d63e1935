"""
Gemini transport (Vertex AI) for the enrichment backend.

Serves the same ``complete`` contract as the chat-completions client so the
backend can switch providers through settings alone. The Vertex AI SDK is
imported lazily: installations that only talk to an OpenAI-compatible
endpoint never load it.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache

from pingq.config import GEMINI_LOCATION, GOOGLE_CLOUD_PROJECT
from pingq.llm.client import ChatMessage, Completion, CompletionRequest, LLMError
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter, time_block

logger = get_logger(__name__)


class GeminiInitializationError(LLMError):
    """Raised when the Vertex AI SDK cannot be initialized."""


@lru_cache(maxsize=4)
def _init_vertex(project: str, location: str) -> None:
    """
    Initialize Vertex AI once per (project, location).

    Uses @lru_cache so concurrent callers share one initialization.
    """
    try:
        import vertexai
    except ImportError as e:
        raise GeminiInitializationError(
            "Vertex AI SDK not installed. Install google-cloud-aiplatform."
        ) from e

    vertexai.init(project=project, location=location)
    logger.info("Initialized Vertex AI: project=%s, location=%s", project, location)


class GeminiClient:
    """Completion transport backed by ``vertexai.generative_models.GenerativeModel``."""

    def __init__(self, project: str | None = GOOGLE_CLOUD_PROJECT, location: str = GEMINI_LOCATION):
        self.project = project
        self.location = location

    async def complete(
        self,
        request: CompletionRequest,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Completion:
        """
        Raises:
            LLMError: If the SDK is unavailable, the call fails or times out
        """
        if not self.project:
            raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

        _init_vertex(self.project, self.location)
        from vertexai.generative_models import GenerationConfig, GenerativeModel

        system = [m.content for m in messages if m.role == "system"]
        user = "\n\n".join(m.content for m in messages if m.role != "system")
        model = GenerativeModel(request.model, system_instruction=system or None)

        try:
            with time_block("llm.gemini.latency"):
                response = await asyncio.wait_for(
                    model.generate_content_async(
                        user,
                        generation_config=GenerationConfig(
                            max_output_tokens=max_tokens, temperature=temperature
                        ),
                    ),
                    timeout=request.timeout_seconds,
                )
        except TimeoutError as exc:
            counter("llm.gemini.timeout")
            raise LLMError(f"Gemini call timed out after {request.timeout_seconds}s") from exc
        except Exception as exc:
            counter("llm.gemini.error")
            raise LLMError(f"Gemini call failed: {exc}") from exc

        try:
            text = response.text
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or empty.
            raise LLMError(f"Gemini returned no text: {exc}") from exc

        counter("llm.gemini.success")
        return Completion(text=(text or "").strip(), model=request.model)
