from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic

from tracklink.models.links import EquivalenceResult

DEFAULT_TTL_SECONDS = 600
DEFAULT_MAX_ENTRIES = 2_000


@dataclass(frozen=True)
class CacheEntry:
    result: EquivalenceResult
    created_at: float


class EquivalenceCache:
    """
    Process-local TTL store keyed by normalized URL.

    Expiry is lazy (checked on read). When the entry count goes past
    `max_entries` the whole store is dropped before the next insert; there is
    no per-entry eviction order.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, CacheEntry] = {}

    def get(self, url: str) -> EquivalenceResult | None:
        with self._lock:
            entry = self._entries.get(url)
            if entry is None:
                return None
            if self._clock() - entry.created_at > self._ttl_seconds:
                del self._entries[url]
                return None
            return entry.result

    def put(self, url: str, result: EquivalenceResult) -> None:
        with self._lock:
            if url not in self._entries and len(self._entries) >= self._max_entries:
                self._entries.clear()
            self._entries[url] = CacheEntry(result=result, created_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
