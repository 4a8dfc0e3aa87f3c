"""Change feed attachment for cached collections."""

from __future__ import annotations

import logging
from collections.abc import Callable

from pystash.catalog import CollectionSpec
from pystash.ingestion.apply import apply_change
from pystash.models.collection import CollectionKey
from pystash.remote import ChangeFeed, Unsubscribe
from pystash.state.events import ChangeFeedEvent, ChangeType
from pystash.state.store import CacheStore

_logger = logging.getLogger(__name__)


class ChangeFeedListener:
    """Applies pushed row changes to the cache entries they belong to.

    Application is idempotent, so at-least-once delivery and several
    listeners attached to the same key are harmless.
    """

    def __init__(
        self,
        store: CacheStore,
        feed: ChangeFeed,
        *,
        is_pending: Callable[[str], bool] | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._is_pending = is_pending

    def attach(self, key: CollectionKey, spec: CollectionSpec) -> Unsubscribe:
        """Subscribe *key* to its collection's feed; returns the unsubscribe."""

        def _on_event(event: ChangeFeedEvent) -> None:
            self.apply(key, spec, event)

        _logger.debug("Attaching change feed to %s", key)
        return self._feed.subscribe(spec.table, key.filters or None, _on_event)

    def apply(self, key: CollectionKey, spec: CollectionSpec, event: ChangeFeedEvent) -> bool:
        """Apply one event to *key*; ``True`` when the cache changed."""
        if event.collection and event.collection != spec.table:
            return False
        if not key.matches(event.target):
            return False
        if self._is_echo(spec, event):
            _logger.debug("Dropping feed echo of pending insert %s on %s", event.target_id, key)
            return False

        data = self._store.get_data(key)
        updated = apply_change(data, event, self._store.ordering_for(key))
        if updated is data:
            return False
        self._store.set(key, updated)
        _logger.debug("Applied feed %s %s to %s", event.type, event.target_id, key)
        return True

    def _is_echo(self, spec: CollectionSpec, event: ChangeFeedEvent) -> bool:
        if spec.echo_field is None or self._is_pending is None or event.type != ChangeType.INSERT:
            return False
        marker = event.record.get(spec.echo_field)
        return isinstance(marker, str) and self._is_pending(marker)
