"""Pydantic request/response models for the pingq API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MAX_BODY_LENGTH = 10_000


class RawMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    nick: str | None = None
    timestamp: str | None = None


class RawEventPayload(BaseModel):
    """Connector event as posted by an out-of-process connector."""

    model_config = ConfigDict(extra="allow")

    message: RawMessage = Field(default_factory=RawMessage)
    title: str | None = None
    body: str | None = Field(default=None, max_length=MAX_BODY_LENGTH)
    icon_url: str | None = None
    channel_id: str | None = None
    is_dm: bool = False


class ChannelPayload(BaseModel):
    id: str
    name: str = ""


class GuildPayload(BaseModel):
    id: str
    name: str = ""
    channels: list[ChannelPayload] = []


class ConnectorReadyRequest(BaseModel):
    guilds: list[GuildPayload] = []


class SettingsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their current value."""

    model_config = ConfigDict(extra="forbid")

    enable_summarization: bool | None = None
    summary_detection_mode: Literal["length", "smart"] | None = None
    min_length_for_summary: int | None = Field(default=None, ge=1)
    api_endpoint: str | None = None
    api_key: str | None = None
    model: str | None = None
    provider: Literal["openai", "gemini"] | None = None

    def changes(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        # The redacted placeholder echoed back by a client never overwrites the stored key.
        if data.get("api_key") == "***":
            data.pop("api_key")
        return data


class SummarizeRequest(BaseModel):
    content: str = Field(min_length=1, max_length=MAX_BODY_LENGTH)


class SummarizeResponse(BaseModel):
    success: bool
    summary: str | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    model_name: str | None = None
    error: str | None = None
