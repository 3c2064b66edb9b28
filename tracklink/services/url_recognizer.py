from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

import httpx

from tracklink.models.links import CandidateUrl, StreamingService
from tracklink.models.slack_contracts import SlackAttachment

_URL_PATTERN = re.compile(r"https?://[^\s<>]+", re.IGNORECASE)
_TRAILING_PUNCTUATION = ".,;:!?)]}'\"»"
_LEADING_PUNCTUATION = "([{'\"«"

# (hostname, allow subdomains)
_SERVICE_HOSTS: dict[StreamingService, tuple[tuple[str, bool], ...]] = {
    StreamingService.SPOTIFY: (
        ("open.spotify.com", True),
        ("spotify.link", False),
    ),
    StreamingService.APPLE_MUSIC: (
        ("music.apple.com", True),
        ("itunes.apple.com", True),
        ("geo.music.apple.com", True),
    ),
    StreamingService.YOUTUBE_MUSIC: (
        ("music.youtube.com", True),
        ("youtube.com", True),
        ("youtu.be", False),
    ),
}


def extract_candidate(
    text: str | None,
    attachments: Sequence[SlackAttachment] = (),
) -> CandidateUrl | None:
    """
    Pick the first supported streaming link of a message.

    Links in the message text win; unfurl attachments are only consulted when the
    text has none, in order, checking `from_url`, `title_link`, `original_url`.
    """
    for url in extract_urls(text or ""):
        candidate = recognize(url)
        if candidate is not None:
            return candidate

    for attachment in attachments:
        for link in attachment.link_fields():
            candidate = recognize(clean_link_markup(link))
            if candidate is not None:
                return candidate
    return None


def extract_urls(text: str) -> list[str]:
    if not text:
        return []
    cleaned = (clean_link_markup(match.group(0)) for match in _URL_PATTERN.finditer(text))
    return [url for url in cleaned if url]


def clean_link_markup(raw: str) -> str:
    """Strip Slack `<url|label>` wrapping and surrounding punctuation."""
    value = (raw or "").strip()
    if value.startswith("<") and value.endswith(">"):
        value = value[1:-1]
    label_index = value.find("|")
    if label_index != -1:
        value = value[:label_index]
    value = value.strip().lstrip(_LEADING_PUNCTUATION)
    return _strip_trailing_punctuation(value).strip()


def _strip_trailing_punctuation(value: str) -> str:
    while value and value[-1] in _TRAILING_PUNCTUATION:
        closing = value[-1]
        # Keep balanced parentheses, e.g. wiki-style paths.
        if closing == ")" and value.count("(") >= value.count(")"):
            break
        value = value[:-1]
    return value


def recognize(url: str) -> CandidateUrl | None:
    service = service_for_url(url)
    if service is None:
        return None
    return CandidateUrl(raw=url, normalized=normalize_url(url), service=service)


def service_for_url(url: str) -> StreamingService | None:
    host = _hostname(normalize_url(url))
    if host is None:
        return None
    return service_for_host(host)


def service_for_host(host: str) -> StreamingService | None:
    normalized = host.strip().lower().rstrip(".")
    if not normalized:
        return None
    for service, rules in _SERVICE_HOSTS.items():
        if _matches_any(normalized, rules):
            return service
    return None


def is_supported_url(url: str) -> bool:
    return service_for_url(url) is not None


def _matches_any(host: str, rules: Iterable[tuple[str, bool]]) -> bool:
    for domain, allow_subdomains in rules:
        if host == domain:
            return True
        if allow_subdomains and host.endswith(f".{domain}"):
            return True
    return False


def normalize_url(value: str) -> str:
    """
    Canonicalize a link for use as a cache key and lookup argument.

    Never raises: anything that does not parse as an absolute http(s) URL is
    returned as the cleaned string. Applying it twice yields the same result.
    """
    cleaned = (value or "").replace("\u00a0", " ")
    while "&amp;" in cleaned:
        cleaned = cleaned.replace("&amp;", "&")
    cleaned = cleaned.strip()
    if not cleaned:
        return cleaned
    try:
        # httpx decodes IDNA hosts lazily, so `.host` can raise too.
        parsed = httpx.URL(cleaned)
        if parsed.scheme not in {"http", "https"} or not parsed.host:
            return cleaned
        return str(parsed)
    except (httpx.InvalidURL, UnicodeError, ValueError, TypeError):
        return cleaned


def _hostname(url: str) -> str | None:
    try:
        parsed = httpx.URL(url)
        if parsed.scheme not in {"http", "https"}:
            return None
        host = parsed.host
    except (httpx.InvalidURL, UnicodeError, ValueError, TypeError):
        return None
    return host.lower() if host else None
