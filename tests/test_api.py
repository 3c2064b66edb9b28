from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from time import time

import pytest
from fastapi.testclient import TestClient

from conftest import APPLE_TRACK_URL, SPOTIFY_TRACK_URL
from tracklink.dependencies import (
    get_equivalence_cache,
    get_http_client,
    get_message_handler,
    get_resolver,
    reset_cached_dependencies,
)
from tracklink.main import create_app
from tracklink.models.links import EquivalenceResult, StreamingService
from tracklink.models.slack_contracts import SlackEventEnvelope
from tracklink.services.message_handler import HandlingResult
from tracklink.services.request_signature import compute_slack_signature

_SIGNING_SECRET = "test-signing-secret"


class _RecordingHandler:
    def __init__(self) -> None:
        self.envelopes: list[SlackEventEnvelope] = []

    async def handle(self, envelope: SlackEventEnvelope) -> HandlingResult:
        self.envelopes.append(envelope)
        return HandlingResult(status="delivered", source="remote")


@contextmanager
def _configured_client(
    monkeypatch: pytest.MonkeyPatch,
    *,
    signing_secret: str | None = None,
    process_before_response: bool = True,
    handler: _RecordingHandler | None = None,
) -> Iterator[TestClient]:
    if signing_secret is None:
        monkeypatch.delenv("TRACKLINK_SLACK_SIGNING_SECRET", raising=False)
    else:
        monkeypatch.setenv("TRACKLINK_SLACK_SIGNING_SECRET", signing_secret)
    monkeypatch.setenv("TRACKLINK_PROCESS_BEFORE_RESPONSE", "1" if process_before_response else "0")
    monkeypatch.delenv("TRACKLINK_SLACK_BOT_TOKEN", raising=False)

    reset_cached_dependencies()
    app = create_app()
    if handler is not None:
        app.dependency_overrides[get_message_handler] = lambda: handler
    with TestClient(app) as test_client:
        yield test_client
    reset_cached_dependencies()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    with _configured_client(monkeypatch) as test_client:
        yield test_client


def _signed_headers(body: bytes, *, secret: str = _SIGNING_SECRET, timestamp: int | None = None) -> dict[str, str]:
    sent_at = str(int(time()) if timestamp is None else timestamp)
    return {
        "Content-Type": "application/json",
        "X-Slack-Request-Timestamp": sent_at,
        "X-Slack-Signature": compute_slack_signature(signing_secret=secret, timestamp=sent_at, body=body),
    }


def _message_event_body(event_id: str = "Ev1") -> bytes:
    return json.dumps(
        {
            "type": "event_callback",
            "team_id": "T1",
            "event_id": event_id,
            "event": {
                "type": "message",
                "channel": "C1",
                "user": "U1",
                "text": f"<{SPOTIFY_TRACK_URL}>",
                "ts": "1700000000.000100",
            },
        }
    ).encode("utf-8")


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers.get("X-Request-ID")


def test_request_id_is_echoed(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


def test_url_verification_returns_challenge(client: TestClient) -> None:
    response = client.post(
        "/slack/events",
        json={"type": "url_verification", "token": "t", "challenge": "abc123"},
    )
    assert response.status_code == 200
    assert response.json() == {"challenge": "abc123"}


def test_url_verification_without_challenge_is_rejected(client: TestClient) -> None:
    response = client.post("/slack/events", json={"type": "url_verification"})
    assert response.status_code == 400


def test_malformed_payload_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/slack/events",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400

    response = client.post("/slack/events", json={"event_id": "Ev1"})
    assert response.status_code == 400


def test_unknown_envelope_type_is_acknowledged(client: TestClient) -> None:
    response = client.post("/slack/events", json={"type": "app_rate_limited"})
    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_event_callback_is_handled_before_ack(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = _RecordingHandler()
    with _configured_client(monkeypatch, handler=handler) as client:
        response = client.post(
            "/slack/events",
            content=_message_event_body(),
            headers={"Content-Type": "application/json", "X-Slack-Retry-Num": "1"},
        )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert [envelope.event_id for envelope in handler.envelopes] == ["Ev1"]


def test_event_callback_can_be_handled_after_ack(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = _RecordingHandler()
    with _configured_client(monkeypatch, handler=handler, process_before_response=False) as client:
        response = client.post(
            "/slack/events",
            content=_message_event_body("Ev7"),
            headers={"Content-Type": "application/json"},
        )

    assert response.status_code == 200
    assert [envelope.event_id for envelope in handler.envelopes] == ["Ev7"]


def test_signed_request_is_accepted(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = _RecordingHandler()
    body = _message_event_body()
    with _configured_client(monkeypatch, signing_secret=_SIGNING_SECRET, handler=handler) as client:
        response = client.post("/slack/events", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert len(handler.envelopes) == 1


def test_bad_signature_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    handler = _RecordingHandler()
    body = _message_event_body()
    with _configured_client(monkeypatch, signing_secret=_SIGNING_SECRET, handler=handler) as client:
        wrong_secret = client.post(
            "/slack/events",
            content=body,
            headers=_signed_headers(body, secret="someone-else"),
        )
        stale = client.post(
            "/slack/events",
            content=body,
            headers=_signed_headers(body, timestamp=int(time()) - 3_600),
        )
        unsigned = client.post(
            "/slack/events",
            content=body,
            headers={"Content-Type": "application/json"},
        )

    assert wrong_secret.status_code == 401
    assert stale.status_code == 401
    assert unsigned.status_code == 401
    assert handler.envelopes == []


def test_resolve_rejects_unsupported_url(client: TestClient) -> None:
    response = client.get("/resolve", params={"url": "https://soundcloud.com/a/b"})
    assert response.status_code == 422


def test_resolve_rejects_malformed_host(client: TestClient) -> None:
    response = client.get("/resolve", params={"url": "https://xn--/x"})
    assert response.status_code == 422


def test_resolve_answers_from_cache(client: TestClient) -> None:
    get_equivalence_cache().put(
        SPOTIFY_TRACK_URL,
        EquivalenceResult(links={StreamingService.APPLE_MUSIC: APPLE_TRACK_URL}, source="remote"),
    )

    response = client.get("/resolve", params={"url": f" {SPOTIFY_TRACK_URL} "})

    assert response.status_code == 200
    assert response.json() == {
        "candidate": SPOTIFY_TRACK_URL,
        "service": "spotify",
        "source": "cache",
        "text": f"🎶 Apple Music: {APPLE_TRACK_URL}",
    }


def test_restarted_app_gets_a_fresh_http_client(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRACKLINK_SLACK_BOT_TOKEN", raising=False)
    reset_cached_dependencies()
    app = create_app()
    try:
        with TestClient(app):
            first = get_http_client()
            get_resolver()

        assert first.is_closed
        assert get_http_client.cache_info().currsize == 0
        assert get_resolver.cache_info().currsize == 0

        with TestClient(app):
            second = get_http_client()
            assert second is not first
            assert not second.is_closed
    finally:
        reset_cached_dependencies()
