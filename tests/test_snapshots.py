from __future__ import annotations

import pytest

from pystash.models.collection import CollectionKey
from pystash.state.snapshots import SnapshotManager
from pystash.state.store import CacheStore


def test_restore_writes_back_exact_data() -> None:
    store = CacheStore()
    key = CollectionKey.of("categories")
    store.set(key, [{"id": "1", "display_name": "Dairy"}])
    snapshots = SnapshotManager(store)

    captured = snapshots.capture("m1", key)
    store.set(key, [])
    assert captured == [{"id": "1", "display_name": "Dairy"}]

    assert snapshots.restore("m1") is True
    assert store.get_data(key) == [{"id": "1", "display_name": "Dairy"}]


def test_snapshot_is_not_affected_by_later_writes() -> None:
    store = CacheStore()
    key = CollectionKey.of("categories")
    store.set(key, [{"id": "1", "display_name": "Dairy"}])
    snapshots = SnapshotManager(store)

    captured = snapshots.capture("m1", key)
    assert captured is not None
    captured[0]["display_name"] = "mutated"
    store.update(key, lambda data: [{**row, "display_name": "Changed"} for row in data or []])

    snapshots.restore("m1")
    assert store.get_data(key) == [{"id": "1", "display_name": "Dairy"}]


def test_absent_data_is_restored_as_absent() -> None:
    store = CacheStore()
    key = CollectionKey.of("categories")
    snapshots = SnapshotManager(store)

    assert snapshots.capture("m1", key) is None
    store.set(key, [{"id": "temp-1"}])
    snapshots.restore("m1")

    assert store.get_data(key) is None


def test_one_snapshot_per_mutation() -> None:
    store = CacheStore()
    snapshots = SnapshotManager(store)
    key = CollectionKey.of("categories")
    snapshots.capture("m1", key)

    with pytest.raises(ValueError):
        snapshots.capture("m1", key)
    snapshots.capture("m2", key)
    assert len(snapshots) == 2


def test_release_and_restore_unknown() -> None:
    store = CacheStore()
    snapshots = SnapshotManager(store)
    snapshots.capture("m1", CollectionKey.of("categories"))
    snapshots.release("m1")

    assert "m1" not in snapshots
    assert snapshots.restore("m1") is False
