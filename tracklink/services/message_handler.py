from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from time import perf_counter
from typing import Literal

from structlog.contextvars import bind_contextvars, reset_contextvars

from tracklink.models.links import CandidateUrl, ResolutionOutcome
from tracklink.models.slack_contracts import SlackEventEnvelope, SlackMessageEvent
from tracklink.repositories.processed_events import ProcessedEventStore
from tracklink.services.link_resolver import LinkResolver
from tracklink.services.slack_client import SlackApiError, SlackMessenger
from tracklink.services.url_recognizer import extract_candidate
from tracklink.telemetry import TelemetryClient

LOGGER = logging.getLogger("tracklink.events")

PROVISIONAL_TEXT = "⏳ Looking up equivalent links…"
PERMISSION_NOTICE_TEXT = (
    "I don't have permission to post in this channel. "
    "Invite me with `/invite @tracklink` or adjust the channel permissions."
)
_IGNORED_SUBTYPES: frozenset[str] = frozenset({"bot_message", "message_deleted"})

HandlingStatus = Literal[
    "ignored",
    "no_url",
    "duplicate",
    "delivered",
    "delivery_failed",
    "error",
]


@dataclass(frozen=True)
class HandlingResult:
    status: HandlingStatus
    source: str | None = None
    reply_ts: str | None = None


@dataclass(frozen=True)
class ProvisionalReply:
    channel: str
    ts: str


class MessageEventHandler:
    """Turns one Slack message event into at most one threaded reply. Never raises."""

    def __init__(
        self,
        *,
        resolver: LinkResolver,
        messenger: SlackMessenger,
        processed_events: ProcessedEventStore,
        allowed_channels: Collection[str] = (),
        provisional_reply_enabled: bool = True,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._resolver = resolver
        self._messenger = messenger
        self._processed_events = processed_events
        self._allowed_channels = frozenset(allowed_channels)
        self._provisional_reply_enabled = provisional_reply_enabled
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def handle(self, envelope: SlackEventEnvelope) -> HandlingResult:
        context_tokens = bind_contextvars(slack_event_id=envelope.event_id or "-")
        try:
            return await self._handle(envelope)
        except Exception:
            LOGGER.exception("message event handling failed")
            return HandlingResult(status="error")
        finally:
            reset_contextvars(**context_tokens)

    async def _handle(self, envelope: SlackEventEnvelope) -> HandlingResult:
        event = envelope.message_event()
        if event is None or is_ignorable_event(event) or event.channel is None:
            return HandlingResult(status="ignored")

        channel = event.channel
        if self._allowed_channels and channel not in self._allowed_channels:
            LOGGER.debug("ignored channel=%s (not in allow-list)", channel)
            return HandlingResult(status="ignored")

        candidate = extract_candidate(event.effective_text(), event.effective_attachments())
        if candidate is None:
            LOGGER.debug("no supported link channel=%s ts=%s", channel, event.ts)
            return HandlingResult(status="no_url")

        # Only events with a link take a dedup slot, so an edit that adds one still counts.
        event_id = envelope.event_id
        if event_id and not self._processed_events.claim(event_id):
            LOGGER.info("duplicate event ignored event_id=%s", event_id)
            return HandlingResult(status="duplicate")

        LOGGER.info(
            "processing link channel=%s service=%s url=%s",
            channel,
            candidate.service.value,
            candidate.normalized,
        )
        thread_ts = event.thread_anchor()
        provisional = await self._post_provisional(channel=channel, thread_ts=thread_ts)
        outcome = await self._resolve(candidate)
        return await self._deliver(
            event=event,
            channel=channel,
            thread_ts=thread_ts,
            provisional=provisional,
            outcome=outcome,
        )

    async def _resolve(self, candidate: CandidateUrl) -> ResolutionOutcome:
        started_at = perf_counter()
        outcome = await self._resolver.resolve(candidate)
        self._telemetry.emit(
            "resolve.finish",
            service=candidate.service.value,
            candidate_url=candidate.normalized,
            source=outcome.source,
            duration_ms=int((perf_counter() - started_at) * 1000),
        )
        return outcome

    async def _post_provisional(
        self,
        *,
        channel: str,
        thread_ts: str | None,
    ) -> ProvisionalReply | None:
        if not self._provisional_reply_enabled:
            return None
        try:
            ts = await self._messenger.post_message(
                channel=channel,
                thread_ts=thread_ts,
                text=PROVISIONAL_TEXT,
            )
        except SlackApiError as exc:
            LOGGER.warning("provisional reply failed error=%s", exc.error)
            return None
        if ts is None:
            return None
        LOGGER.debug("provisional reply posted ts=%s", ts)
        return ProvisionalReply(channel=channel, ts=ts)

    async def _deliver(
        self,
        *,
        event: SlackMessageEvent,
        channel: str,
        thread_ts: str | None,
        provisional: ProvisionalReply | None,
        outcome: ResolutionOutcome,
    ) -> HandlingResult:
        try:
            if provisional is not None:
                reply_ts = await self._messenger.update_message(
                    channel=provisional.channel,
                    ts=provisional.ts,
                    text=outcome.text,
                )
            else:
                reply_ts = await self._messenger.post_message(
                    channel=channel,
                    thread_ts=thread_ts,
                    text=outcome.text,
                )
        except SlackApiError as exc:
            LOGGER.error("reply delivery failed error=%s status=%s", exc.error, exc.status_code)
            self._telemetry.emit(
                "slack.delivery.error",
                error=exc.error,
                status_code=exc.status_code,
                edited=provisional is not None,
            )
            if exc.is_permission_error:
                await self._notify_sender(channel=channel, user=event.sender())
            return HandlingResult(status="delivery_failed", source=outcome.source)

        LOGGER.debug("reply delivered ts=%s source=%s", reply_ts, outcome.source)
        return HandlingResult(status="delivered", source=outcome.source, reply_ts=reply_ts)

    async def _notify_sender(self, *, channel: str, user: str | None) -> None:
        if user is None:
            return
        try:
            await self._messenger.post_ephemeral(
                channel=channel,
                user=user,
                text=PERMISSION_NOTICE_TEXT,
            )
        except SlackApiError as exc:
            LOGGER.error("ephemeral notice failed error=%s", exc.error)
            return
        LOGGER.info("ephemeral permission notice sent channel=%s", channel)


def is_ignorable_event(event: SlackMessageEvent) -> bool:
    if event.bot_id or event.subtype in _IGNORED_SUBTYPES:
        return True
    # Edits of our own replies come back as message_changed with a bot author.
    nested = event.message
    if nested is not None and (nested.bot_id or nested.subtype == "bot_message"):
        return True
    return False
