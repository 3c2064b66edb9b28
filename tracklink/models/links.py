from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Literal

ResultSource = Literal["remote", "fallback-search"]
OutcomeSource = Literal["remote", "cache", "fallback-search", "apology"]


class StreamingService(StrEnum):
    SPOTIFY = "spotify"
    APPLE_MUSIC = "apple_music"
    YOUTUBE_MUSIC = "youtube_music"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES: dict[StreamingService, str] = {
    StreamingService.SPOTIFY: "Spotify",
    StreamingService.APPLE_MUSIC: "Apple Music",
    StreamingService.YOUTUBE_MUSIC: "YouTube Music",
}

# Reply and search-suggestion order.
SERVICE_ORDER: tuple[StreamingService, ...] = (
    StreamingService.SPOTIFY,
    StreamingService.APPLE_MUSIC,
    StreamingService.YOUTUBE_MUSIC,
)


@dataclass(frozen=True)
class CandidateUrl:
    raw: str
    normalized: str
    service: StreamingService


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class EquivalenceResult:
    """Equivalent links for one candidate. Partial by nature: absent services are omitted."""

    links: Mapping[StreamingService, str]
    source: ResultSource
    fetched_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        cleaned = {service: url for service, url in self.links.items() if url}
        object.__setattr__(self, "links", MappingProxyType(cleaned))

    @property
    def is_usable(self) -> bool:
        return bool(self.links)

    def ordered_links(self) -> list[tuple[StreamingService, str]]:
        return [(service, self.links[service]) for service in SERVICE_ORDER if service in self.links]


@dataclass(frozen=True)
class ResolutionOutcome:
    text: str
    source: OutcomeSource
