from __future__ import annotations

import asyncio
from typing import Any, cast

import httpx

from conftest import (
    APPLE_TRACK_URL,
    SPOTIFY_TRACK_URL,
    RoutingTransport,
    json_response,
    respond_after,
)
from tracklink.models.links import StreamingService
from tracklink.services.fallback_builder import (
    APOLOGY_TEXT,
    FALLBACK_FOOTER,
    FALLBACK_HEADER,
    FallbackBuilder,
    MetadataProbe,
    TrackMetadata,
    refine_query,
    render_search_reply,
    search_url,
)
from tracklink.services.url_recognizer import recognize


def _build(routes: RoutingTransport, url: str, *, probe_timeout: float = 1.0) -> str:
    candidate = recognize(url)
    assert candidate is not None

    async def scenario() -> str:
        async with httpx.AsyncClient(transport=routes.transport()) as client:
            builder = FallbackBuilder(
                metadata_probe=MetadataProbe(http_client=client, timeout_seconds=probe_timeout),
            )
            return await builder.build(candidate)

    return asyncio.run(scenario())


def test_refine_query_drops_annotations_and_featuring() -> None:
    assert refine_query("Song (Remix) [Live] feat. Someone Else") == "Song"
    assert refine_query("Song ft. Guest") == "Song"
    assert refine_query("Song  (2011 Remaster)   Artist") == "Song Artist"
    assert refine_query("") == ""


def test_search_url_encodes_query() -> None:
    assert search_url(StreamingService.SPOTIFY, "a b/c") == "https://open.spotify.com/search/a%20b%2Fc"
    assert (
        search_url(StreamingService.APPLE_MUSIC, "a&b")
        == "https://music.apple.com/us/search?term=a%26b"
    )
    assert (
        search_url(StreamingService.YOUTUBE_MUSIC, "a b")
        == "https://music.youtube.com/search?q=a%20b"
    )


def test_render_search_reply_skips_source_service() -> None:
    text = render_search_reply(StreamingService.YOUTUBE_MUSIC, "Song Artist")
    lines = text.splitlines()

    assert lines[0] == FALLBACK_HEADER
    assert lines[-1] == FALLBACK_FOOTER
    assert lines[1:-1] == [
        "- Spotify (search): https://open.spotify.com/search/Song%20Artist",
        "- Apple Music (search): https://music.apple.com/us/search?term=Song%20Artist",
    ]


def test_track_metadata_query_text_skips_missing_parts() -> None:
    assert TrackMetadata(title="Song", author=None).query_text() == "Song"
    assert TrackMetadata(title=None, author=None).query_text() == ""


def test_spotify_fallback_uses_oembed_metadata() -> None:
    routes = RoutingTransport(
        oembed=respond_after(
            0,
            json_response({"title": "Never Gonna Give You Up (Remastered)", "author_name": "Rick Astley"}),
        ),
    )

    text = _build(routes, SPOTIFY_TRACK_URL)

    assert routes.calls_to("open.spotify.com") == 1
    assert routes.requests[0].url.params["url"] == SPOTIFY_TRACK_URL
    assert "open.spotify.com/search" not in text
    assert "https://music.apple.com/us/search?term=Never%20Gonna%20Give%20You%20Up%20Rick%20Astley" in text
    assert "https://music.youtube.com/search?q=Never%20Gonna%20Give%20You%20Up%20Rick%20Astley" in text


def test_non_spotify_fallback_searches_with_url_and_skips_probe() -> None:
    routes = RoutingTransport()

    text = _build(routes, APPLE_TRACK_URL)

    assert routes.requests == []
    assert "music.apple.com/us/search" not in text
    assert "https://open.spotify.com/search/https%3A%2F%2Fmusic.apple.com" in text
    assert "https://music.youtube.com/search?q=https%3A%2F%2Fmusic.apple.com" in text


def test_probe_failure_falls_back_to_url_query() -> None:
    routes = RoutingTransport(oembed=respond_after(0, json_response({}, status_code=500)))

    text = _build(routes, SPOTIFY_TRACK_URL)

    assert text.startswith(FALLBACK_HEADER)
    assert "term=https%3A%2F%2Fopen.spotify.com%2Ftrack%2F4JjqJhEW00zcGiMIsunf0X" in text


def test_probe_timeout_falls_back_to_url_query() -> None:
    routes = RoutingTransport(oembed=respond_after(1.0, json_response({"title": "Late"})))

    text = _build(routes, SPOTIFY_TRACK_URL, probe_timeout=0.1)

    assert "Late" not in text
    assert "q=https%3A%2F%2Fopen.spotify.com" in text


class _ExplodingProbe:
    def supports(self, service: StreamingService) -> bool:
        _ = service
        return True

    async def probe(self, url: str) -> TrackMetadata:
        raise RuntimeError(f"unexpected failure for {url}")


def test_unexpected_error_yields_apology() -> None:
    candidate = recognize(SPOTIFY_TRACK_URL)
    assert candidate is not None
    builder = FallbackBuilder(metadata_probe=cast(Any, _ExplodingProbe()))

    assert asyncio.run(builder.build(candidate)) == APOLOGY_TEXT
