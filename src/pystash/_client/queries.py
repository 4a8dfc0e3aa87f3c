"""Fetch orchestration for cached collections.

Owns:
- deduplication of concurrent fetches per key
- freshness decisions and background refetches
- bounded fetch retries with exponential backoff
- ignoring late results of cancelled fetches
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from pystash.models._base import Entity
from pystash.models.collection import CollectionKey
from pystash.models.entry import CacheEntry
from pystash.state.policy import fetch_retry_delay, is_stale, should_retry_fetch
from pystash.state.store import CacheStore

_logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[list[Entity]]]
Sleep = Callable[[float], Awaitable[None]]


class QueryController:
    """Populates the :class:`CacheStore` from loaders.

    A loader is the zero-argument coroutine function that fetches a key's
    authoritative data.  Loaders are registered on first use and reused by
    background refetches triggered by staleness or invalidation.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        stale_time: float,
        max_retries: int,
        retry_delay: float,
        retry_max_delay: float,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._stale_time = stale_time
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._loaders: dict[CollectionKey, Loader] = {}
        self._inflight: dict[CollectionKey, asyncio.Task[None]] = {}
        self._generations: dict[CollectionKey, int] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def store(self) -> CacheStore:
        return self._store

    def register(self, key: CollectionKey, loader: Loader) -> None:
        self._loaders[key] = loader

    def has_loader(self, key: CollectionKey) -> bool:
        return key in self._loaders

    def is_fetching(self, key: CollectionKey) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    def is_stale(self, key: CollectionKey) -> bool:
        entry = self._store.get(key)
        return is_stale(
            last_updated=entry.last_updated,
            now=self._store.now(),
            stale_time=self._stale_time,
            invalidated=entry.is_invalidated,
        )

    async def fetch(self, key: CollectionKey, loader: Loader | None = None) -> CacheEntry:
        """Fetch *key* now, joining a fetch already in flight.

        Raises the final error once retries are exhausted; the entry keeps
        its previous data and is marked as errored.
        """
        if loader is not None:
            self.register(key, loader)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = self._start(key)
        await asyncio.shield(task)
        return self._store.get(key)

    def read(self, key: CollectionKey, loader: Loader | None = None) -> CacheEntry:
        """Return the cached entry, scheduling a refetch when it is stale."""
        if loader is not None:
            self.register(key, loader)
        if key in self._loaders and not self.is_fetching(key) and self.is_stale(key):
            self._start(key)
        return self._store.get(key)

    def cancel(self, key: CollectionKey) -> None:
        """Make any in-flight fetch for *key* drop its result.

        The remote call itself keeps running; only its cache write is
        skipped.
        """
        self._generations[key] = self._generations.get(key, 0) + 1
        if self._inflight.pop(key, None) is not None:
            self._store.abandon_fetch(key)

    def invalidate(self, key: CollectionKey) -> None:
        """Mark *key* stale and refetch it when a loader is known."""
        self._store.invalidate(key)
        if key in self._loaders:
            self.cancel(key)
            self._start(key)

    async def wait(self, key: CollectionKey) -> CacheEntry:
        """Wait for the fetch in flight for *key*, if any."""
        task = self._inflight.get(key)
        if task is not None:
            await asyncio.wait([task])
        return self._store.get(key)

    async def wait_all(self) -> None:
        while self._inflight:
            await asyncio.wait(list(self._inflight.values()))

    async def close(self) -> None:
        tasks = list(self._tasks)
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start(self, key: CollectionKey) -> asyncio.Task[None]:
        loader = self._loaders.get(key)
        if loader is None:
            raise ValueError(f"No loader registered for {key}")
        generation = self._generations.get(key, 0)
        self._store.mark_loading(key)
        task = asyncio.get_running_loop().create_task(self._run(key, loader, generation))
        self._inflight[key] = task
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        # Failures were already recorded on the entry.
        exc = task.exception()
        if exc is not None:
            _logger.debug("Background fetch ended with %s", type(exc).__name__)

    def _is_current(self, key: CollectionKey, generation: int) -> bool:
        return self._generations.get(key, 0) == generation

    async def _run(self, key: CollectionKey, loader: Loader, generation: int) -> None:
        try:
            attempt = 0
            while True:
                try:
                    data = await loader()
                except Exception as exc:
                    if not self._is_current(key, generation):
                        _logger.debug("Ignoring failure of cancelled fetch for %s", key)
                        return
                    if not should_retry_fetch(exc, attempt=attempt, max_retries=self._max_retries):
                        _logger.warning("Fetching %s failed: %s", key, exc)
                        self._store.fail_fetch(key, str(exc))
                        raise
                    delay = fetch_retry_delay(attempt, base=self._retry_delay, cap=self._retry_max_delay)
                    _logger.debug(
                        "Fetching %s failed (attempt %d), retrying in %.1fs: %s",
                        key,
                        attempt + 1,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    if not self._is_current(key, generation):
                        return
                    continue

                if not self._is_current(key, generation):
                    _logger.debug("Ignoring late result of cancelled fetch for %s", key)
                    return
                self._store.complete_fetch(key, data)
                return
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                self._inflight.pop(key, None)
