from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field

import httpx
import pytest

from tracklink.dependencies import reset_cached_dependencies
from tracklink.services.slack_client import SlackApiError

SPOTIFY_TRACK_URL = "https://open.spotify.com/track/4JjqJhEW00zcGiMIsunf0X"
APPLE_TRACK_URL = "https://music.apple.com/us/album/song/1440857781?i=1440858123"
YOUTUBE_TRACK_URL = "https://music.youtube.com/watch?v=dQw4w9WgXcQ"

ODESLI_ALL_PLATFORMS: dict[str, object] = {
    "entityUniqueId": "SPOTIFY_SONG::4JjqJhEW00zcGiMIsunf0X",
    "linksByPlatform": {
        "spotify": {"url": SPOTIFY_TRACK_URL, "entityUniqueId": "SPOTIFY_SONG::x"},
        "appleMusic": {"url": APPLE_TRACK_URL, "entityUniqueId": "ITUNES_SONG::y"},
        "youtubeMusic": {"url": YOUTUBE_TRACK_URL, "entityUniqueId": "YOUTUBE_VIDEO::z"},
        "deezer": {"url": "https://www.deezer.com/track/1"},
    },
}

Handler = Callable[[httpx.Request], Awaitable[httpx.Response]]


def json_response(payload: object, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode("utf-8"),
        headers={"content-type": "application/json"},
    )


def respond_after(delay: float, response: httpx.Response) -> Handler:
    async def _handler(request: httpx.Request) -> httpx.Response:
        _ = request
        await asyncio.sleep(delay)
        return response

    return _handler


@dataclass
class RoutingTransport:
    """Routes fake HTTP traffic by host and records every request."""

    odesli: Handler | None = None
    oembed: Handler | None = None
    requests: list[httpx.Request] = field(default_factory=list)

    def calls_to(self, host: str) -> int:
        return sum(1 for request in self.requests if request.url.host == host)

    @property
    def odesli_calls(self) -> int:
        return self.calls_to("api.song.link")

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._dispatch)

    async def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "api.song.link" and self.odesli is not None:
            return await self.odesli(request)
        if request.url.path == "/oembed" and self.oembed is not None:
            return await self.oembed(request)
        return httpx.Response(404, text="not found")


@dataclass
class FakeMessenger:
    post_error: SlackApiError | None = None
    update_error: SlackApiError | None = None
    ephemeral_error: SlackApiError | None = None
    provisional_error: SlackApiError | None = None
    posts: list[dict[str, str | None]] = field(default_factory=list)
    updates: list[dict[str, str]] = field(default_factory=list)
    ephemerals: list[dict[str, str]] = field(default_factory=list)

    async def post_message(self, *, channel: str, thread_ts: str | None, text: str) -> str | None:
        if self.provisional_error is not None and text.startswith("⏳"):
            raise self.provisional_error
        if self.post_error is not None and not text.startswith("⏳"):
            raise self.post_error
        self.posts.append({"channel": channel, "thread_ts": thread_ts, "text": text})
        return f"1700000000.{len(self.posts):06d}"

    async def update_message(self, *, channel: str, ts: str, text: str) -> str | None:
        if self.update_error is not None:
            raise self.update_error
        self.updates.append({"channel": channel, "ts": ts, "text": text})
        return ts

    async def post_ephemeral(self, *, channel: str, user: str, text: str) -> None:
        if self.ephemeral_error is not None:
            raise self.ephemeral_error
        self.ephemerals.append({"channel": channel, "user": user, "text": text})


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "DEBUG",
        "VERCEL",
        "ALLOWED_CHANNELS",
        "ODESLI_TIMEOUT_MS",
        "SLACK_BOT_TOKEN",
        "SLACK_SIGNING_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRACKLINK_TELEMETRY_SINK", "none")
    reset_cached_dependencies()
    yield
    reset_cached_dependencies()
