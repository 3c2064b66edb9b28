from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _default_attachments() -> list[SlackAttachment]:
    return []


class SlackAttachment(BaseModel):
    """Unfurl metadata Slack attaches to messages that contain links."""

    model_config = ConfigDict(extra="ignore")

    from_url: str | None = None
    title_link: str | None = None
    original_url: str | None = None

    def link_fields(self) -> list[str]:
        return [
            value
            for value in (self.from_url, self.title_link, self.original_url)
            if isinstance(value, str) and value.strip()
        ]


class SlackNestedMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: str | None = None
    ts: str | None = None
    user: str | None = None
    bot_id: str | None = None
    subtype: str | None = None
    attachments: list[SlackAttachment] = Field(default_factory=_default_attachments)


class SlackMessageEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str = "message"
    subtype: str | None = None
    channel: str | None = None
    user: str | None = None
    text: str | None = None
    ts: str | None = None
    thread_ts: str | None = None
    bot_id: str | None = None
    message: SlackNestedMessage | None = None
    attachments: list[SlackAttachment] = Field(default_factory=_default_attachments)

    def effective_text(self) -> str:
        if isinstance(self.text, str):
            return self.text
        if self.message is not None and isinstance(self.message.text, str):
            return self.message.text
        return ""

    def effective_attachments(self) -> list[SlackAttachment]:
        if self.message is not None and self.message.attachments:
            return self.message.attachments
        return self.attachments

    def thread_anchor(self) -> str | None:
        # Edited messages arrive as message_changed; the reply belongs to the original.
        if self.message is not None and self.message.ts:
            return self.message.ts
        return self.thread_ts or self.ts

    def sender(self) -> str | None:
        if self.user:
            return self.user
        if self.message is not None:
            return self.message.user
        return None


class SlackEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    token: str | None = None
    team_id: str | None = None
    event_id: str | None = None
    event_time: int | None = None
    challenge: str | None = None
    event: dict[str, Any] | None = None

    def message_event(self) -> SlackMessageEvent | None:
        if self.event is None:
            return None
        if self.event.get("type") != "message":
            return None
        return SlackMessageEvent.model_validate(self.event)


class SlackEventAck(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool = True


class SlackChallengeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    challenge: str


class ResolveProbeResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    candidate: str
    service: str
    source: str
    text: str
