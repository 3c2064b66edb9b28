from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, cast

import httpx

from tracklink.models.links import EquivalenceResult, StreamingService

LOGGER = logging.getLogger("tracklink.odesli")

DEFAULT_BASE_URL = "https://api.song.link/v1-alpha.1"
_ERROR_BODY_SAMPLE_CHARS = 400
_PARSE_ERROR_SAMPLE_CHARS = 200

# linksByPlatform key -> service
_PLATFORM_KEYS: dict[str, StreamingService] = {
    "spotify": StreamingService.SPOTIFY,
    "appleMusic": StreamingService.APPLE_MUSIC,
    "youtubeMusic": StreamingService.YOUTUBE_MUSIC,
}


class RemoteError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeoutError(RemoteError):
    pass


class EmptyResultError(RemoteError):
    pass


class EquivalenceFetcher:
    """
    Single-shot client for the song.link (Odesli) `links` endpoint.

    One GET per call, bounded by the configured timeout. Non-2xx responses,
    unparsable bodies, timeouts and payloads without any of the three
    supported platforms all raise `RemoteError`; there is no retry here.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        timeout_seconds: float,
        base_url: str = DEFAULT_BASE_URL,
        user_country: str = "US",
        user_agent: str = "tracklink-musicbot/1.0",
    ) -> None:
        self._http_client = http_client
        self._timeout_seconds = max(0.05, float(timeout_seconds))
        self._base_url = base_url.rstrip("/")
        self._user_country = user_country
        self._user_agent = user_agent

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def fetch(self, url: str) -> EquivalenceResult:
        params = {"userCountry": self._user_country, "url": url}
        headers = {"Accept": "application/json", "User-Agent": self._user_agent}
        LOGGER.debug("odesli lookup start url=%s timeout=%.2fs", url, self._timeout_seconds)
        try:
            async with asyncio.timeout(self._timeout_seconds):
                response = await self._http_client.get(
                    f"{self._base_url}/links",
                    params=params,
                    headers=headers,
                    timeout=self._timeout_seconds,
                )
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise RemoteTimeoutError(
                f"odesli lookup timed out after {self._timeout_seconds:.2f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteError(f"odesli request failed: {exc}") from exc

        raw_body = response.text
        LOGGER.debug(
            "odesli lookup status=%s content_type=%s",
            response.status_code,
            response.headers.get("content-type"),
        )
        if not response.is_success:
            LOGGER.warning(
                "odesli lookup failed status=%s body=%s",
                response.status_code,
                raw_body[:_ERROR_BODY_SAMPLE_CHARS],
            )
            raise RemoteError(
                f"odesli status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            LOGGER.warning(
                "odesli payload parse failed error=%s sample=%s",
                exc,
                raw_body[:_PARSE_ERROR_SAMPLE_CHARS],
            )
            raise RemoteError(
                "odesli payload is not valid JSON",
                status_code=response.status_code,
            ) from exc

        links = links_from_payload(payload)
        if not links:
            raise EmptyResultError(
                "odesli payload has no usable links",
                status_code=response.status_code,
            )
        return EquivalenceResult(links=links, source="remote")


def links_from_payload(payload: object) -> dict[StreamingService, str]:
    if not isinstance(payload, dict):
        return {}
    by_platform = cast(dict[str, Any], payload).get("linksByPlatform")
    if not isinstance(by_platform, Mapping):
        return {}

    links: dict[StreamingService, str] = {}
    for key, service in _PLATFORM_KEYS.items():
        entry = cast(Mapping[str, Any], by_platform).get(key)
        if not isinstance(entry, Mapping):
            continue
        url = _as_url(cast(Mapping[str, Any], entry).get("url"))
        if url is not None:
            links[service] = url
    return links


def _as_url(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if not stripped:
        return None
    return stripped
