"""Snapshots of cache entries taken before optimistic writes."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from pystash.models._base import Entity
from pystash.models.collection import CollectionKey
from pystash.state.store import CacheStore

_logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Snapshot:
    key: CollectionKey
    data: list[Entity] | None


class SnapshotManager:
    """Records entry data per mutation and restores it verbatim.

    Each correlation id owns exactly one snapshot; snapshots are private
    deep copies and never shared between mutations.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store
        self._snapshots: dict[str, Snapshot] = {}

    def capture(self, correlation_id: str, key: CollectionKey) -> list[Entity] | None:
        """Record the current data of *key* and return a copy of it."""
        if correlation_id in self._snapshots:
            raise ValueError(f"snapshot already captured for mutation {correlation_id}")
        data = self._store.get_data(key)
        self._snapshots[correlation_id] = Snapshot(key=key, data=data)
        return copy.deepcopy(data)

    def restore(self, correlation_id: str) -> bool:
        """Write the recorded data back; ``False`` when nothing was recorded."""
        snapshot = self._snapshots.get(correlation_id)
        if snapshot is None:
            _logger.debug("No snapshot to restore for mutation %s", correlation_id)
            return False
        self._store.set(snapshot.key, copy.deepcopy(snapshot.data))
        return True

    def release(self, correlation_id: str) -> None:
        self._snapshots.pop(correlation_id, None)

    def get(self, correlation_id: str) -> Snapshot | None:
        return self._snapshots.get(correlation_id)

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._snapshots
