from __future__ import annotations

from threading import Lock

DEFAULT_MAX_ENTRIES = 2_000


class ProcessedEventStore:
    """
    In-memory record of Slack event ids that already produced a reply.

    Only events that carried a supported link are recorded. Past
    `max_entries` ids the set is cleared wholesale, so very old ids can be
    processed again; that is accepted in exchange for a fixed memory bound.
    """

    def __init__(self, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self._max_entries = max(1, int(max_entries))
        self._lock = Lock()
        self._event_ids: set[str] = set()

    def should_process(self, event_id: str) -> bool:
        with self._lock:
            return event_id not in self._event_ids

    def mark_processed(self, event_id: str) -> None:
        with self._lock:
            self._add(event_id)

    def claim(self, event_id: str) -> bool:
        """Mark `event_id` and report whether this caller is the first to see it."""
        with self._lock:
            if event_id in self._event_ids:
                return False
            self._add(event_id)
            return True

    def _add(self, event_id: str) -> None:
        self._event_ids.add(event_id)
        if len(self._event_ids) > self._max_entries:
            self._event_ids.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._event_ids)
