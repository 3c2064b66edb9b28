from __future__ import annotations

import json
import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import ValidationError

from tracklink.config import AppSettings
from tracklink.dependencies import get_message_handler, get_resolver, get_settings
from tracklink.models.slack_contracts import (
    ResolveProbeResponse,
    SlackChallengeResponse,
    SlackEventAck,
    SlackEventEnvelope,
)
from tracklink.services.link_resolver import LinkResolver
from tracklink.services.message_handler import MessageEventHandler
from tracklink.services.request_signature import verify_slack_signature
from tracklink.services.url_recognizer import recognize

LOGGER = logging.getLogger("tracklink.api")

router = APIRouter()


async def _read_verified_body(request: Request, settings: AppSettings) -> bytes:
    body = await request.body()
    if settings.slack_signing_secret is None:
        return body
    verified = verify_slack_signature(
        signing_secret=settings.slack_signing_secret,
        timestamp=request.headers.get("X-Slack-Request-Timestamp"),
        body=body,
        signature=request.headers.get("X-Slack-Signature"),
        max_age_seconds=settings.slack_signature_max_age_seconds,
    )
    if not verified:
        LOGGER.warning("rejected slack request with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid Slack request signature.")
    return body


def _parse_envelope(body: bytes) -> SlackEventEnvelope:
    try:
        return SlackEventEnvelope.model_validate(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail="Malformed Slack event payload.") from exc


@router.post(
    "/slack/events",
    response_model=SlackChallengeResponse | SlackEventAck,
    tags=["slack"],
    operation_id="slack_events",
)
async def slack_events(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Annotated[AppSettings, Depends(get_settings)],
    handler: Annotated[MessageEventHandler, Depends(get_message_handler)],
) -> SlackChallengeResponse | SlackEventAck:
    body = await _read_verified_body(request, settings)
    envelope = _parse_envelope(body)

    if envelope.type == "url_verification":
        if envelope.challenge is None:
            raise HTTPException(status_code=400, detail="Missing url_verification challenge.")
        return SlackChallengeResponse(challenge=envelope.challenge)

    if envelope.type != "event_callback":
        LOGGER.debug("ignored slack envelope type=%s", envelope.type)
        return SlackEventAck()

    retry_num = request.headers.get("X-Slack-Retry-Num")
    if retry_num is not None:
        LOGGER.info(
            "slack retry received event_id=%s retry=%s reason=%s",
            envelope.event_id,
            retry_num,
            request.headers.get("X-Slack-Retry-Reason"),
        )

    if settings.process_before_response:
        result = await handler.handle(envelope)
        LOGGER.debug("slack event handled status=%s", result.status)
    else:
        background_tasks.add_task(handler.handle, envelope)
    return SlackEventAck()


@router.get(
    "/resolve",
    response_model=ResolveProbeResponse,
    tags=["resolve"],
    operation_id="resolve_link",
)
async def resolve_link(
    url: Annotated[str, Query(min_length=1)],
    resolver: Annotated[LinkResolver, Depends(get_resolver)],
) -> ResolveProbeResponse:
    candidate = recognize(url.strip())
    if candidate is None:
        raise HTTPException(status_code=422, detail="URL is not a supported streaming link.")
    outcome = await resolver.resolve(candidate)
    return ResolveProbeResponse(
        candidate=candidate.normalized,
        service=candidate.service.value,
        source=outcome.source,
        text=outcome.text,
    )
