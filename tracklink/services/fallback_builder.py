from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import quote

import httpx

from tracklink.models.links import SERVICE_ORDER, CandidateUrl, StreamingService

LOGGER = logging.getLogger("tracklink.fallback")

FALLBACK_HEADER = "🎶 Couldn't confirm exact matches right now, try these searches:"
FALLBACK_FOOTER = "_(quick mode: the link lookup service is slow right now)_"
APOLOGY_TEXT = "🎶 Couldn't confirm exact matches right now."

SPOTIFY_OEMBED_URL = "https://open.spotify.com/oembed"

_ANNOTATION_PATTERN = re.compile(r"\s*[(\[][^)\]]*[)\]]")
_FEATURING_PATTERN = re.compile(r"\s+(feat\.?|ft\.?)\s+.+$", re.IGNORECASE)
_MULTISPACE_PATTERN = re.compile(r"\s{2,}")


@dataclass(frozen=True)
class TrackMetadata:
    title: str | None
    author: str | None

    def query_text(self) -> str:
        return " ".join(part for part in (self.title, self.author) if part)


class MetadataProbe:
    """Cheap title/author lookup through Spotify's public oEmbed endpoint."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        timeout_seconds: float,
        oembed_url: str = SPOTIFY_OEMBED_URL,
        user_agent: str = "tracklink-musicbot/1.0",
    ) -> None:
        self._http_client = http_client
        self._timeout_seconds = max(0.05, float(timeout_seconds))
        self._oembed_url = oembed_url
        self._user_agent = user_agent

    def supports(self, service: StreamingService) -> bool:
        return service is StreamingService.SPOTIFY

    async def probe(self, url: str) -> TrackMetadata:
        async with asyncio.timeout(self._timeout_seconds):
            response = await self._http_client.get(
                self._oembed_url,
                params={"url": url},
                headers={"Accept": "application/json", "User-Agent": self._user_agent},
                timeout=self._timeout_seconds,
            )
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            return TrackMetadata(title=None, author=None)
        data = cast(dict[str, Any], payload)
        return TrackMetadata(
            title=_as_text(data.get("title")),
            author=_as_text(data.get("author_name")) or _as_text(data.get("author")),
        )


class FallbackBuilder:
    def __init__(self, *, metadata_probe: MetadataProbe | None = None) -> None:
        self._metadata_probe = metadata_probe

    async def build(self, candidate: CandidateUrl) -> str:
        try:
            query = refine_query(await self._search_text(candidate))
            return render_search_reply(candidate.service, query or candidate.normalized)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("fallback build failed url=%s", candidate.normalized)
            return APOLOGY_TEXT

    async def _search_text(self, candidate: CandidateUrl) -> str:
        probe = self._metadata_probe
        if probe is None or not probe.supports(candidate.service):
            return candidate.normalized
        try:
            metadata = await probe.probe(candidate.normalized)
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            LOGGER.debug("metadata probe failed url=%s error=%r", candidate.normalized, exc)
            return candidate.normalized
        merged = metadata.query_text()
        LOGGER.debug(
            "metadata probe title=%s author=%s merged=%s",
            metadata.title,
            metadata.author,
            merged,
        )
        return merged or candidate.normalized


def refine_query(text: str) -> str:
    """Drop `(Remix)`/`[Live]` style annotations and trailing `feat.` clauses."""
    if not text:
        return text
    refined = _ANNOTATION_PATTERN.sub("", text)
    refined = _FEATURING_PATTERN.sub("", refined)
    return _MULTISPACE_PATTERN.sub(" ", refined).strip()


def search_url(service: StreamingService, query: str) -> str:
    encoded = quote(query, safe="")
    if service is StreamingService.SPOTIFY:
        return f"https://open.spotify.com/search/{encoded}"
    if service is StreamingService.APPLE_MUSIC:
        return f"https://music.apple.com/us/search?term={encoded}"
    return f"https://music.youtube.com/search?q={encoded}"


def render_search_reply(source: StreamingService, query: str) -> str:
    lines = [FALLBACK_HEADER]
    for service in SERVICE_ORDER:
        if service is source:
            continue
        lines.append(f"- {service.display_name} (search): {search_url(service, query)}")
    lines.append(FALLBACK_FOOTER)
    return "\n".join(lines)


def _as_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None
