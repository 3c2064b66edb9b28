from __future__ import annotations

from functools import lru_cache

import httpx

from tracklink.config import AppSettings, load_settings
from tracklink.repositories.equivalence_cache import EquivalenceCache
from tracklink.repositories.processed_events import ProcessedEventStore
from tracklink.services.equivalence_fetcher import EquivalenceFetcher
from tracklink.services.fallback_builder import FallbackBuilder, MetadataProbe
from tracklink.services.link_resolver import LinkResolver
from tracklink.services.message_handler import MessageEventHandler
from tracklink.services.slack_client import SlackMessenger
from tracklink.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True)


@lru_cache(maxsize=1)
def get_equivalence_cache() -> EquivalenceCache:
    settings = get_settings()
    return EquivalenceCache(
        ttl_seconds=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )


@lru_cache(maxsize=1)
def get_processed_events() -> ProcessedEventStore:
    return ProcessedEventStore(max_entries=get_settings().dedup_max_entries)


@lru_cache(maxsize=1)
def get_resolver() -> LinkResolver:
    settings = get_settings()
    http_client = get_http_client()
    return LinkResolver(
        cache=get_equivalence_cache(),
        fetcher=EquivalenceFetcher(
            http_client=http_client,
            timeout_seconds=settings.effective_fetch_timeout_ms / 1000,
            base_url=settings.odesli_base_url,
            user_country=settings.odesli_user_country,
            user_agent=settings.http_user_agent,
        ),
        fallback_builder=FallbackBuilder(
            metadata_probe=MetadataProbe(
                http_client=http_client,
                timeout_seconds=settings.effective_probe_timeout_ms / 1000,
                user_agent=settings.http_user_agent,
            ),
        ),
        deadline_seconds=settings.global_deadline_ms / 1000,
        fallback_grace_seconds=settings.fallback_grace_ms / 1000,
    )


@lru_cache(maxsize=1)
def get_message_handler() -> MessageEventHandler:
    settings = get_settings()
    return MessageEventHandler(
        resolver=get_resolver(),
        messenger=SlackMessenger(
            http_client=get_http_client(),
            bot_token=settings.slack_bot_token,
            base_url=settings.slack_api_base_url,
            timeout_seconds=settings.slack_http_timeout_seconds,
        ),
        processed_events=get_processed_events(),
        allowed_channels=settings.allowed_channel_ids,
        provisional_reply_enabled=settings.provisional_reply_enabled,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


def reset_cached_dependencies() -> None:
    get_message_handler.cache_clear()
    get_resolver.cache_clear()
    get_processed_events.cache_clear()
    get_equivalence_cache.cache_clear()
    get_http_client.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
