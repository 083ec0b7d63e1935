"""
Enrichment backend adapter.

Wraps the text-analysis oracle behind four independently failable
capabilities:

- ``check_summarization_need``  YES/NO question            -> Result[bool]
- ``summarize``                 1-2 sentence summary        -> Result[str]
- ``categorize``                category + importance JSON  -> Result[Categorization]
- ``extract_event_details``     calendar event JSON         -> Result[ExtractedEvent | None]

Nothing here raises to the caller: transport, parse and schema failures are
caught at this boundary and returned as ``Err(reason)``. Configuration is
swapped atomically by ``configure``; every call captures the configuration
it started with, so a settings change affects the next call only.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ValidationError, field_validator

from pingq.config import CONNECTION_TEST_MODEL, LLM_TIMEOUT_SECONDS
from pingq.enrichment.event_validation import ExtractedEvent
from pingq.enrichment.result import Err, Ok, Result
from pingq.llm.client import (
    ChatCompletionsClient,
    ChatMessage,
    CompletionRequest,
    CompletionTransport,
    LLMError,
)
from pingq.llm.gemini import GeminiClient
from pingq.llm.prompts import PromptLoader, get_prompt_loader, sanitize_message
from pingq.notifications.models import Category, Importance
from pingq.observability.logging import get_logger, preview
from pingq.observability.telemetry import counter, log_event
from pingq.settings import PipelineSettings

logger = get_logger(__name__)

_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\s*```$")


@dataclass(frozen=True)
class BackendConfig:
    """Snapshot of the settings the backend needs; replaced, never mutated."""

    enabled: bool = False
    endpoint: str = ""
    api_key: str = ""
    model: str = ""
    provider: str = "openai"
    timeout_seconds: float = LLM_TIMEOUT_SECONDS

    @classmethod
    def from_settings(cls, settings: PipelineSettings, timeout_seconds: float = LLM_TIMEOUT_SECONDS) -> BackendConfig:
        return cls(
            enabled=settings.enable_summarization,
            endpoint=settings.api_endpoint,
            api_key=settings.api_key,
            model=settings.model,
            provider=settings.provider,
            timeout_seconds=timeout_seconds,
        )

    @property
    def is_ready(self) -> bool:
        """Enabled and configured well enough to attempt a call."""
        if not self.enabled or not self.model:
            return False
        if self.provider == "openai":
            return bool(self.endpoint.strip())
        return True

    def request(self) -> CompletionRequest:
        return CompletionRequest(
            endpoint=self.endpoint,
            model=self.model,
            api_key=self.api_key,
            timeout_seconds=self.timeout_seconds,
        )


@dataclass(frozen=True)
class RecentMessage:
    author: str
    content: str


@dataclass(frozen=True)
class SummaryContext:
    """What the summarizer is told about where a message came from."""

    is_dm: bool = False
    channel: str | None = None
    author: str | None = None
    recent_messages: Sequence[RecentMessage] = field(default_factory=tuple)


class Categorization(BaseModel):
    """Schema for the categorize reply."""

    category: Category
    importance: Importance

    @field_validator("category", "importance", mode="before")
    @classmethod
    def _upper(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    model_name: str | None = None
    error: str | None = None


def strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = _CODE_FENCE_START.sub("", text)
        text = _CODE_FENCE_END.sub("", text)
    return text.strip()


def _parse_json_object(text: str) -> dict:
    data = json.loads(strip_code_fence(text))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class EnrichmentBackend:
    """Adapter over a completion transport, selected per call by ``config.provider``."""

    def __init__(
        self,
        config: BackendConfig | None = None,
        transports: Mapping[str, CompletionTransport] | None = None,
        prompts: PromptLoader | None = None,
    ):
        self._config = config or BackendConfig()
        self._transports: dict[str, CompletionTransport] = (
            dict(transports)
            if transports is not None
            else {"openai": ChatCompletionsClient(), "gemini": GeminiClient()}
        )
        self._prompts = prompts or get_prompt_loader()

    # -- configuration -----------------------------------------------------

    @property
    def config(self) -> BackendConfig:
        return self._config

    def configure(self, config: BackendConfig) -> None:
        """Swap configuration; in-flight calls keep the snapshot they started with."""
        self._config = config
        log_event(
            "backend.configured",
            enabled=config.enabled,
            provider=config.provider,
            model=config.model,
            endpoint=config.endpoint,
            has_key=bool(config.api_key),
        )

    def is_enabled(self) -> bool:
        return self._config.is_ready

    # -- capabilities ------------------------------------------------------

    async def check_summarization_need(self, text: str) -> Result[bool]:
        """Ask the backend whether ``text`` warrants a summary (YES/NO)."""
        config = self._config
        messages = [
            ChatMessage("system", self._prompts.render("need_check_system")),
            ChatMessage("user", self._prompts.render("need_check", message=sanitize_message(text))),
        ]
        reply = await self._call("need_check", config, messages, max_tokens=5, temperature=0.1)
        if isinstance(reply, Err):
            return reply

        answer = reply.value.strip().strip(".!\"'").upper()
        if answer.startswith("YES"):
            return Ok(True)
        if answer.startswith("NO"):
            return Ok(False)
        counter("backend.need_check.unparseable")
        return Err(f"unexpected need-check answer: {reply.value[:20]!r}")

    async def summarize(self, text: str, context: SummaryContext | None = None) -> Result[str]:
        """Summarize ``text``; an empty reply is an Err."""
        config = self._config
        context = context or SummaryContext()

        context_lines = ""
        if context.channel:
            context_lines += f"\n- Channel: {context.channel}"
        if context.author:
            context_lines += f"\n- Author: {context.author}"
        if context.recent_messages:
            history = "\n".join(f"  {m.author}: {m.content}" for m in context.recent_messages)
            context_lines += f"\n- Recent conversation context:\n{history}"
        if context.is_dm:
            context_lines += "\n- This is a direct message conversation"

        messages = [
            ChatMessage("system", self._prompts.render("summarize_system", context=context_lines)),
            ChatMessage(
                "user",
                self._prompts.render(
                    "summarize",
                    message=sanitize_message(text),
                    dm_suffix=" from this DM conversation" if context.is_dm else "",
                ),
            ),
        ]
        reply = await self._call("summarize", config, messages, max_tokens=100, temperature=0.3)
        if isinstance(reply, Err):
            return reply
        summary = reply.value.strip()
        if not summary:
            counter("backend.summarize.empty")
            return Err("empty summary")
        return Ok(summary)

    async def categorize(self, text: str) -> Result[Categorization]:
        config = self._config
        messages = [
            ChatMessage("system", self._prompts.render("categorize_system")),
            ChatMessage("user", self._prompts.render("categorize", message=sanitize_message(text))),
        ]
        reply = await self._call("categorize", config, messages, max_tokens=100, temperature=0.1)
        if isinstance(reply, Err):
            return reply
        try:
            return Ok(Categorization.model_validate(_parse_json_object(reply.value)))
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            counter("backend.categorize.parse_error")
            logger.warning("Unparseable categorization reply: %s", e)
            return Err(f"invalid categorization: {e}")

    async def extract_event_details(self, text: str, reference: datetime) -> Result[ExtractedEvent | None]:
        """``Ok(None)`` means the backend found no event; ``Err`` means the call failed."""
        config = self._config
        messages = [
            ChatMessage("system", self._prompts.render("extract_event_system")),
            ChatMessage(
                "user",
                self._prompts.render(
                    "extract_event",
                    message=sanitize_message(text),
                    reference=reference.strftime("%Y-%m-%d %H:%M"),
                    weekday=reference.strftime("%A"),
                ),
            ),
        ]
        reply = await self._call("extract_event", config, messages, max_tokens=300, temperature=0.1)
        if isinstance(reply, Err):
            return reply
        try:
            extracted = ExtractedEvent.model_validate(_parse_json_object(reply.value))
        except (ValueError, ValidationError) as e:
            counter("backend.extract_event.parse_error")
            logger.warning("Unparseable event extraction reply: %s", e)
            return Err(f"invalid event payload: {e}")
        return Ok(extracted if extracted.has_event else None)

    async def test_connection(self, settings: PipelineSettings) -> ConnectionCheck:
        """
        Probe candidate settings without applying them.

        Side Effects:
            - One small completion request against the candidate endpoint
        """
        if settings.provider == "openai" and not settings.api_endpoint:
            return ConnectionCheck(success=False, error="API endpoint is required")

        candidate = BackendConfig.from_settings(settings)
        request = CompletionRequest(
            endpoint=candidate.endpoint,
            model=candidate.model or CONNECTION_TEST_MODEL,
            api_key=candidate.api_key,
            timeout_seconds=candidate.timeout_seconds,
        )
        transport = self._transports.get(candidate.provider)
        if transport is None:
            return ConnectionCheck(success=False, error=f"unknown provider {candidate.provider!r}")

        messages = [
            ChatMessage("system", "You are a helpful assistant."),
            ChatMessage("user", "Say hello for a connection test!"),
        ]
        try:
            completion = await transport.complete(request, messages, max_tokens=10, temperature=0.3)
        except LLMError as e:
            log_event("backend.connection_test.failed", provider=candidate.provider, error=str(e))
            return ConnectionCheck(success=False, error=str(e))
        except Exception as e:
            logger.exception("Connection test failed unexpectedly")
            return ConnectionCheck(success=False, error=str(e) or "Connection failed")

        log_event("backend.connection_test.ok", provider=candidate.provider, model=completion.model)
        return ConnectionCheck(success=True, model_name=completion.model or "Unknown model")

    # -- internals ---------------------------------------------------------

    async def _call(
        self,
        capability: str,
        config: BackendConfig,
        messages: list[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Result[str]:
        if not config.is_ready:
            counter(f"backend.{capability}.disabled")
            return Err("backend disabled or not configured")

        transport = self._transports.get(config.provider)
        if transport is None:
            return Err(f"unknown provider {config.provider!r}")

        try:
            completion = await transport.complete(config.request(), messages, max_tokens, temperature)
        except LLMError as e:
            counter(f"backend.{capability}.error")
            logger.warning("Backend %s failed: %s", capability, e)
            return Err(str(e))
        except Exception as e:
            # Third-party transports may raise anything; the contract is Err, not an exception.
            counter(f"backend.{capability}.error")
            logger.exception("Backend %s raised unexpectedly for %s", capability, preview(messages[-1].content))
            return Err(f"{type(e).__name__}: {e}")

        counter(f"backend.{capability}.success")
        return Ok(completion.text)
