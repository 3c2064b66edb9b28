from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import perf_counter

from tracklink.models.links import CandidateUrl, EquivalenceResult, ResolutionOutcome
from tracklink.repositories.equivalence_cache import EquivalenceCache
from tracklink.services.equivalence_fetcher import EmptyResultError, EquivalenceFetcher
from tracklink.services.fallback_builder import APOLOGY_TEXT, FallbackBuilder

LOGGER = logging.getLogger("tracklink.resolver")


@dataclass
class _InflightFetch:
    task: asyncio.Task[EquivalenceResult]
    deadline: float


def format_equivalence_reply(result: EquivalenceResult) -> str:
    if not result.is_usable:
        raise EmptyResultError("equivalence result has no usable links")
    return "\n".join(f"🎶 {service.display_name}: {url}" for service, url in result.ordered_links())


class LinkResolver:
    """
    Races the cache/lookup branch against the search-link fallback.

    A fresh cache entry answers immediately. Otherwise both branches start
    together under one deadline: a valid lookup reply wins outright, a failed
    or empty lookup leaves the field to the fallback, and a fallback that
    finishes first is held for `fallback_grace_seconds` so a quick lookup can
    still take over. With `fallback_grace_seconds=0` the first branch to
    finish with a usable reply wins. Nothing usable before the deadline
    yields `APOLOGY_TEXT`.

    Lookups for the same normalized URL are shared between concurrent calls.
    A lookup that loses the race keeps running until the latest deadline of
    the calls sharing it, so a late success still lands in the cache.
    """

    def __init__(
        self,
        *,
        cache: EquivalenceCache,
        fetcher: EquivalenceFetcher,
        fallback_builder: FallbackBuilder,
        deadline_seconds: float,
        fallback_grace_seconds: float = 0.25,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._fallback_builder = fallback_builder
        self._deadline_seconds = max(0.0, float(deadline_seconds))
        self._fallback_grace_seconds = max(0.0, float(fallback_grace_seconds))
        self._inflight: dict[str, _InflightFetch] = {}
        self._background: set[asyncio.Task[None]] = set()

    @property
    def deadline_seconds(self) -> float:
        return self._deadline_seconds

    async def resolve(self, candidate: CandidateUrl) -> ResolutionOutcome:
        started_at = perf_counter()
        key = candidate.normalized

        cached = self._cache.get(key)
        if cached is not None and cached.is_usable:
            LOGGER.debug("cache hit url=%s", key)
            return ResolutionOutcome(text=format_equivalence_reply(cached), source="cache")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._deadline_seconds
        fetch_task = self._shared_fetch(key, deadline)
        remote_task = asyncio.create_task(self._remote_reply(fetch_task))
        fallback_task = asyncio.create_task(self._fallback_builder.build(candidate))

        try:
            outcome = await self._select(remote_task, fallback_task, deadline)
        finally:
            for task in (remote_task, fallback_task):
                if not task.done():
                    task.cancel()

        LOGGER.info(
            "resolved url=%s source=%s duration_ms=%s",
            key,
            outcome.source,
            int((perf_counter() - started_at) * 1000),
        )
        return outcome

    async def _select(
        self,
        remote_task: asyncio.Task[str],
        fallback_task: asyncio.Task[str],
        deadline: float,
    ) -> ResolutionOutcome:
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task[str]] = {remote_task, fallback_task}
        fallback_text: str | None = None
        grace_until = deadline

        while pending:
            limit = min(deadline, grace_until) if fallback_text is not None else deadline
            timeout = limit - loop.time()
            if timeout <= 0:
                break
            done, pending = await asyncio.wait(
                pending,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                break

            if remote_task in done:
                text = _task_text(remote_task)
                if text is not None:
                    return ResolutionOutcome(text=text, source="remote")
                LOGGER.debug("lookup branch produced no reply; waiting on fallback")

            if fallback_task in done:
                text = _task_text(fallback_task)
                # The builder's own apology is not a result; keep waiting on the lookup.
                if text is not None and text != APOLOGY_TEXT:
                    fallback_text = text
                    grace_until = loop.time() + self._fallback_grace_seconds

        if fallback_text is not None:
            return ResolutionOutcome(text=fallback_text, source="fallback-search")
        if not pending:
            LOGGER.info("both branches failed; replying with apology")
        else:
            LOGGER.info("global deadline of %.2fs elapsed; replying with apology", self._deadline_seconds)
        return ResolutionOutcome(text=APOLOGY_TEXT, source="apology")

    async def _remote_reply(self, fetch_task: asyncio.Task[EquivalenceResult]) -> str:
        result = await asyncio.shield(fetch_task)
        return format_equivalence_reply(result)

    def _shared_fetch(self, key: str, deadline: float) -> asyncio.Task[EquivalenceResult]:
        inflight = self._inflight.get(key)
        if inflight is not None and not inflight.task.done():
            inflight.deadline = max(inflight.deadline, deadline)
            LOGGER.debug("joining in-flight lookup url=%s", key)
            return inflight.task

        task = asyncio.create_task(self._fetch_and_store(key))
        inflight = _InflightFetch(task=task, deadline=deadline)
        self._inflight[key] = inflight
        task.add_done_callback(lambda done: self._forget(key, done))

        reaper = asyncio.create_task(self._expire_at_deadline(inflight))
        self._background.add(reaper)
        reaper.add_done_callback(self._background.discard)
        return task

    async def _fetch_and_store(self, key: str) -> EquivalenceResult:
        result = await self._fetcher.fetch(key)
        self._cache.put(key, result)
        return result

    async def _expire_at_deadline(self, inflight: _InflightFetch) -> None:
        loop = asyncio.get_running_loop()
        while not inflight.task.done():
            remaining = inflight.deadline - loop.time()
            if remaining <= 0:
                LOGGER.debug("aborting lookup past deadline")
                inflight.task.cancel()
                return
            await asyncio.wait({inflight.task}, timeout=remaining)

    def _forget(self, key: str, task: asyncio.Task[EquivalenceResult]) -> None:
        current = self._inflight.get(key)
        if current is not None and current.task is task:
            del self._inflight[key]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            LOGGER.info("lookup unavailable url=%s error=%s", key, error)


def _task_text(task: asyncio.Task[str]) -> str | None:
    if task.cancelled():
        return None
    if task.exception() is not None:
        return None
    text = task.result()
    return text or None
