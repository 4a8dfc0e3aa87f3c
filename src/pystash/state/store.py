"""In-memory collection cache.

This is the only component that holds collection data.  Every write goes
through :meth:`CacheStore.set` (directly or via :meth:`CacheStore.update`),
which re-establishes id uniqueness and the collection's ordering, so both
invariants hold after every mutating step and not only after fetches.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pystash.models._base import Entity
from pystash.models.collection import CollectionKey, Ordering
from pystash.models.entry import CacheEntry, QueryStatus
from pystash.state.policy import normalize_entities

_logger = logging.getLogger(__name__)

EntryListener = Callable[[CacheEntry], None]
DataUpdater = Callable[[list[Entity] | None], list[Entity] | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CacheStore:
    """Keyed map from :class:`CollectionKey` to :class:`CacheEntry`.

    All methods are synchronous.  Callers run on a single event loop and
    never await between a read and the write derived from it, so no
    locking is needed.  Reads return deep copies; mutating a returned
    entry never changes the cache.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._entries: dict[CollectionKey, CacheEntry] = {}
        self._orderings: dict[str, Ordering] = {}
        self._listeners: dict[CollectionKey, list[EntryListener]] = {}

    def configure(self, collection: str, ordering: Ordering) -> None:
        """Set the ordering enforced on every entry of *collection*."""
        self._orderings[collection] = tuple(ordering)

    def ordering_for(self, key: CollectionKey) -> Ordering:
        return self._orderings.get(key.name, ())

    def now(self) -> datetime:
        return self._clock()

    def _entry(self, key: CollectionKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def keys(self) -> list[CollectionKey]:
        return list(self._entries)

    def get(self, key: CollectionKey) -> CacheEntry:
        """Return a copy of the entry, creating an empty one on first access."""
        return self._entry(key).model_copy(deep=True)

    def get_data(self, key: CollectionKey) -> list[Entity] | None:
        return copy.deepcopy(self._entry(key).data)

    def set(self, key: CollectionKey, data: list[Entity] | None) -> None:
        """Replace the entry data (``None`` marks it absent)."""
        entry = self._entry(key)
        entry.data = self._normalize(key, data)
        self._notify(key)

    def update(self, key: CollectionKey, fn: DataUpdater) -> None:
        """Replace the entry data with ``fn(current_copy)``."""
        self.set(key, fn(self.get_data(key)))

    def invalidate(self, key: CollectionKey) -> None:
        """Mark the entry stale; the next read refetches it."""
        entry = self._entry(key)
        entry.is_invalidated = True
        self._notify(key)

    # ------------------------------------------------------------------
    # Fetch bookkeeping (driven by the query controller)
    # ------------------------------------------------------------------

    def mark_loading(self, key: CollectionKey) -> None:
        entry = self._entry(key)
        entry.is_fetching = True
        if entry.data is None:
            entry.status = QueryStatus.LOADING
        self._notify(key)

    def complete_fetch(self, key: CollectionKey, data: list[Entity]) -> None:
        entry = self._entry(key)
        entry.data = self._normalize(key, data)
        entry.status = QueryStatus.SUCCESS
        entry.last_updated = self._clock()
        entry.error = None
        entry.is_invalidated = False
        entry.is_fetching = False
        entry.fetch_failure_count = 0
        self._notify(key)

    def fail_fetch(self, key: CollectionKey, error: str) -> None:
        """Record a failed fetch; previously cached data stays in place."""
        entry = self._entry(key)
        entry.status = QueryStatus.ERROR
        entry.error = error
        entry.is_fetching = False
        entry.fetch_failure_count += 1
        self._notify(key)

    def abandon_fetch(self, key: CollectionKey) -> None:
        """Clear the fetching flag of a fetch whose result is ignored."""
        entry = self._entry(key)
        if not entry.is_fetching:
            return
        entry.is_fetching = False
        if entry.status == QueryStatus.LOADING:
            entry.status = QueryStatus.SUCCESS if entry.data is not None else QueryStatus.IDLE
        self._notify(key)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, key: CollectionKey, listener: EntryListener) -> Callable[[], None]:
        """Call *listener* with a copy of the entry after every change."""
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners is None:
                return
            self._listeners[key] = [cand for cand in listeners if cand is not listener]
            if not self._listeners[key]:
                self._listeners.pop(key, None)

        return _unsubscribe

    def has_listeners(self, key: CollectionKey) -> bool:
        return bool(self._listeners.get(key))

    def clear(self) -> None:
        """Drop every entry and listener (end of session)."""
        self._entries.clear()
        self._listeners.clear()

    def _normalize(self, key: CollectionKey, data: list[Entity] | None) -> list[Entity] | None:
        if data is None:
            return None
        normalized, dropped = normalize_entities(copy.deepcopy(data), self.ordering_for(key))
        if dropped:
            _logger.debug("Dropped duplicate ids from %s: %s", key, dropped)
        return normalized

    def _notify(self, key: CollectionKey) -> None:
        listeners = self._listeners.get(key)
        if not listeners:
            return
        snapshot = self._entries[key]
        for listener in list(listeners):
            try:
                listener(snapshot.model_copy(deep=True))
            except Exception:
                _logger.debug("Cache listener for %s failed", key, exc_info=True)
