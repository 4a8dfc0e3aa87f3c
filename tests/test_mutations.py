from __future__ import annotations

import asyncio
import dataclasses
from typing import Any

import pytest

from pystash._client.feed import ChangeFeedListener
from pystash._client.mutations import MutationCoordinator
from pystash._client.queries import QueryController
from pystash.catalog import CollectionSpec, default_catalog
from pystash.exceptions import (
    StashAuthenticationError,
    StashDuplicateError,
    StashNetworkError,
    StashNotFoundError,
)
from pystash.models._base import Entity, is_temporary_id
from pystash.models.collection import CollectionKey
from pystash.models.mutation import MutationKind, MutationPhase, MutationRecord
from pystash.session import Actor
from pystash.state.store import CacheStore

CATALOG = default_catalog()
FOOD = CATALOG.get("food_items")
CATEGORIES = CATALOG.get("categories")
SHOPPING = CATALOG.get("shopping_items")


@dataclasses.dataclass
class _Harness:
    store: CacheStore
    queries: QueryController
    coordinator: MutationCoordinator
    key: CollectionKey
    spec: CollectionSpec

    async def load(self, remote: Any) -> None:
        spec = self.spec

        async def _loader() -> list[Entity]:
            return await remote.fetch(spec.table, filters=self.key.filters, order=spec.ordering)

        await self.queries.fetch(self.key, _loader)

    def data(self) -> list[Entity] | None:
        return self.store.get_data(self.key)

    def ids(self) -> list[str]:
        return [str(item["id"]) for item in self.data() or []]


def _harness(remote: Any, spec: CollectionSpec = FOOD) -> _Harness:
    store = CacheStore()
    store.configure(spec.name, spec.ordering)
    queries = QueryController(store, stale_time=300, max_retries=0, retry_delay=0.0, retry_max_delay=0.0)
    coordinator = MutationCoordinator(store, queries, remote)
    return _Harness(store, queries, coordinator, CollectionKey.of(spec.name), spec)


async def _drain() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_insert_shows_temporary_entity_then_authoritative_row(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk", "created_at": "2025-01-01T00:00:00+00:00"}])
    h = _harness(remote)
    await h.load(remote)

    gate = remote.hold("insert")
    task = asyncio.create_task(h.coordinator.insert(h.key, FOOD, {"name": "Eggs"}))
    await _drain()

    data = h.data() or []
    assert [item["name"] for item in data] == ["Eggs", "Milk"]
    assert is_temporary_id(data[0]["id"])
    assert data[0]["user_id"] == "temp-user"

    gate.set()
    created = await task

    assert created["id"] == "100"
    assert created["user_id"] == "user-1"
    assert h.ids() == ["100", "42"]
    assert len(h.coordinator.snapshots) == 0

    refreshed = await h.queries.wait(h.key)
    assert refreshed.ids() == ["100", "42"]


@pytest.mark.asyncio
async def test_duplicate_name_rolls_back_with_domain_message(remote: Any) -> None:
    remote.seed("categories", [{"id": "1", "display_name": "Dairy"}])
    remote.unique["categories"] = "display_name"
    h = _harness(remote, CATEGORIES)
    await h.load(remote)
    before = h.data()

    with pytest.raises(StashDuplicateError, match="A category with this name already exists") as exc_info:
        await h.coordinator.insert(h.key, CATEGORIES, {"display_name": "Dairy"})

    assert exc_info.value.code == "23505"
    assert h.data() == before
    assert not any(is_temporary_id(entity_id) for entity_id in h.ids())


@pytest.mark.asyncio
async def test_failed_update_restores_snapshot(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk", "created_at": "2025-01-01T00:00:00+00:00"}])
    h = _harness(remote)
    await h.load(remote)
    before = h.data()
    remote.fail("update", StashNetworkError("down"))

    with pytest.raises(StashNetworkError):
        await h.coordinator.update(h.key, FOOD, "42", {"name": "Oat milk"})

    assert h.data() == before


@pytest.mark.asyncio
async def test_update_is_visible_while_in_flight_and_stamps_updated_at(remote: Any) -> None:
    remote.seed(
        "food_items",
        [{"id": "42", "name": "Milk", "created_at": "2025-01-01T00:00:00+00:00", "updated_at": "2025-01-01"}],
    )
    h = _harness(remote)
    await h.load(remote)

    gate = remote.hold("update")
    task = asyncio.create_task(h.coordinator.update(h.key, FOOD, "42", {"name": "Oat milk"}))
    await _drain()

    optimistic = (h.data() or [])[0]
    assert optimistic["name"] == "Oat milk"
    assert optimistic["updated_at"] != "2025-01-01"

    gate.set()
    updated = await task
    assert updated["name"] == "Oat milk"


@pytest.mark.asyncio
async def test_delete_of_missing_row_restores_snapshot(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk"}])
    h = _harness(remote)
    await h.load(remote)
    before = h.data()
    remote.tables["food_items"] = []

    with pytest.raises(StashNotFoundError):
        await h.coordinator.delete(h.key, FOOD, "42")

    assert h.data() == before


@pytest.mark.asyncio
async def test_unauthenticated_mutation_leaves_cache_untouched(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk"}])
    h = _harness(remote)
    await h.load(remote)
    before = h.store.get(h.key)
    remote.actor = None

    with pytest.raises(StashAuthenticationError, match="User not authenticated"):
        await h.coordinator.insert(h.key, FOOD, {"name": "Eggs"})

    assert remote.count("insert") == 0
    assert h.store.get(h.key) == before
    assert len(h.coordinator.snapshots) == 0


@pytest.mark.asyncio
async def test_cancelled_mutation_rolls_back(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk"}])
    h = _harness(remote)
    await h.load(remote)
    before = h.data()

    remote.hold("insert")
    task = asyncio.create_task(h.coordinator.insert(h.key, FOOD, {"name": "Eggs"}))
    await _drain()
    assert len(h.ids()) == 2

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert h.data() == before
    assert h.coordinator.in_flight() == []


@pytest.mark.asyncio
async def test_disjoint_concurrent_mutations_converge_to_server_state(remote: Any) -> None:
    remote.seed(
        "food_items",
        [
            {"id": "b", "name": "Bread", "created_at": "2025-01-02T00:00:00+00:00"},
            {"id": "c", "name": "Cheese", "created_at": "2025-01-01T00:00:00+00:00"},
        ],
    )
    h = _harness(remote)
    await h.load(remote)
    remote.fail("insert", StashNetworkError("down"))

    results = await asyncio.gather(
        h.coordinator.insert(h.key, FOOD, {"name": "Apples"}),
        h.coordinator.delete(h.key, FOOD, "b"),
        return_exceptions=True,
    )
    await h.queries.wait_all()

    assert isinstance(results[0], StashNetworkError)
    assert results[1] is None
    assert h.ids() == ["c"]
    assert h.data() == await remote.fetch("food_items", order=FOOD.ordering)


@pytest.mark.asyncio
async def test_disjoint_insert_and_delete_both_succeed(remote: Any) -> None:
    remote.seed(
        "food_items",
        [
            {"id": "b", "name": "Bread", "created_at": "2025-01-02T00:00:00+00:00"},
            {"id": "c", "name": "Cheese", "created_at": "2025-01-01T00:00:00+00:00"},
        ],
    )
    h = _harness(remote)
    await h.load(remote)

    insert_gate = remote.hold("insert")
    insert = asyncio.create_task(h.coordinator.insert(h.key, FOOD, {"name": "Apples"}))
    await _drain()
    await h.coordinator.delete(h.key, FOOD, "b")
    await _drain()

    # The delete settled first; its refetch waits for the pending insert.
    data = h.data() or []
    assert [item["name"] for item in data] == ["Apples", "Cheese"]
    assert is_temporary_id(data[0]["id"])
    assert h.store.get(h.key).is_invalidated
    assert not h.queries.is_fetching(h.key)

    insert_gate.set()
    created = await insert
    await h.queries.wait_all()

    assert h.ids() == [created["id"], "c"]
    assert "b" not in h.ids()
    assert h.data() == await remote.fetch("food_items", order=FOOD.ordering)


@pytest.mark.asyncio
async def test_network_failure_on_insert_restores_original_cache(remote: Any) -> None:
    remote.seed("food_items", [{"id": "1", "name": "Milk"}])
    h = _harness(remote)
    await h.load(remote)
    assert h.data() == [{"id": "1", "name": "Milk"}]

    gate = remote.hold("insert")
    remote.fail("insert", StashNetworkError("connection reset"))
    task = asyncio.create_task(h.coordinator.insert(h.key, FOOD, {"name": "Eggs"}))
    await _drain()

    optimistic = h.data() or []
    assert [item["name"] for item in optimistic] == ["Eggs", "Milk"]
    assert is_temporary_id(optimistic[0]["id"])

    gate.set()
    with pytest.raises(StashNetworkError):
        await task

    assert h.data() == [{"id": "1", "name": "Milk"}]

    await h.queries.wait_all()
    assert h.data() == [{"id": "1", "name": "Milk"}]


@pytest.mark.asyncio
async def test_integer_ids_match_cached_string_ids(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk"}, {"id": "43", "name": "Eggs"}])
    h = _harness(remote)
    await h.load(remote)

    gate = remote.hold("update")
    task = asyncio.create_task(h.coordinator.update(h.key, FOOD, 42, {"name": "Oat milk"}))
    await _drain()
    assert [item["name"] for item in h.data() or [] if item["id"] == "42"] == ["Oat milk"]

    gate.set()
    updated = await task
    assert updated["name"] == "Oat milk"

    gate = remote.hold("delete")
    task = asyncio.create_task(h.coordinator.delete(h.key, FOOD, 43))
    await _drain()
    assert "43" not in h.ids()

    gate.set()
    await task
    await h.queries.wait_all()
    assert h.ids() == ["42"]


@pytest.mark.asyncio
async def test_rollback_drops_orphaned_temporary_of_settled_mutation(remote: Any) -> None:
    remote.seed("food_items", [{"id": "c", "name": "Cheese"}])
    h = _harness(remote)
    await h.load(remote)

    insert_gate = remote.hold("insert")
    insert = asyncio.create_task(h.coordinator.insert(h.key, FOOD, {"name": "Apples"}))
    await _drain()
    delete_gate = remote.hold("delete")
    remote.fail("delete", StashNetworkError("down"))
    delete = asyncio.create_task(h.coordinator.delete(h.key, FOOD, "c"))
    await _drain()

    insert_gate.set()
    await insert
    delete_gate.set()
    with pytest.raises(StashNetworkError):
        await delete

    assert not any(is_temporary_id(entity_id) for entity_id in h.ids())
    assert "c" in h.ids()


@pytest.mark.asyncio
async def test_feed_insert_before_commit_does_not_leave_duplicates(remote: Any, feed: Any) -> None:
    remote.seed("shopping_items", [])
    h = _harness(remote, SHOPPING)
    await h.load(remote)
    ChangeFeedListener(h.store, feed, is_pending=h.coordinator.is_pending).attach(h.key, SHOPPING)

    gate = remote.hold("insert")
    task = asyncio.create_task(h.coordinator.insert(h.key, SHOPPING, {"name": "Eggs"}))
    await _drain()
    feed.emit("shopping_items", "INSERT", {"id": "100", "name": "Eggs", "created_at": "2025-01-01T00:00:00+00:00"})
    assert len(h.ids()) == 2

    gate.set()
    await task

    assert h.ids() == ["100"]


@pytest.mark.asyncio
async def test_echo_field_suppresses_feed_echo_of_pending_insert(remote: Any, feed: Any) -> None:
    spec = dataclasses.replace(SHOPPING, echo_field="client_ref")
    remote.seed("shopping_items", [])
    h = _harness(remote, spec)
    await h.load(remote)
    ChangeFeedListener(h.store, feed, is_pending=h.coordinator.is_pending).attach(h.key, spec)

    gate = remote.hold("insert")
    task = asyncio.create_task(h.coordinator.insert(h.key, spec, {"name": "Eggs"}))
    await _drain()
    correlation_id = (h.data() or [])[0]["client_ref"]
    feed.emit("shopping_items", "INSERT", {"id": "100", "name": "Eggs", "client_ref": correlation_id})
    assert len(h.ids()) == 1

    gate.set()
    created = await task

    assert created["client_ref"] == correlation_id
    assert h.ids() == ["100"]


@pytest.mark.asyncio
async def test_public_lifecycle_steps(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk"}])
    h = _harness(remote)
    await h.load(remote)
    before = h.data()

    record = h.coordinator.apply_optimistic(h.key, FOOD, MutationKind.DELETE, target_id="42")
    assert record.phase == MutationPhase.OPTIMISTIC_APPLIED
    assert record.snapshot == before
    assert h.ids() == []

    h.coordinator.rollback(record)
    assert record.phase == MutationPhase.ROLLED_BACK
    assert h.data() == before

    h.coordinator.settle(record)
    assert record.phase == MutationPhase.SETTLED
    assert record.correlation_id not in h.coordinator.snapshots
    assert h.store.get(h.key).is_invalidated or h.queries.is_fetching(h.key)


@pytest.mark.asyncio
async def test_run_with_custom_remote_call(remote: Any) -> None:
    remote.seed("food_items", [{"id": "42", "name": "Milk", "quantity": 1}])
    h = _harness(remote)
    await h.load(remote)

    async def _consume(record: MutationRecord, actor: Actor) -> Entity:
        assert actor.id == "user-1"
        return await remote.update("food_items", "42", {"quantity": 0})

    record = await h.coordinator.run(
        h.key,
        FOOD,
        MutationKind.UPDATE,
        _consume,
        target_id="42",
        patch={"quantity": 0},
    )

    assert record.phase == MutationPhase.SETTLED
    assert record.result is not None and record.result["quantity"] == 0
    assert (h.data() or [])[0]["quantity"] == 0


def test_update_requires_target_id(remote: Any) -> None:
    h = _harness(remote)
    with pytest.raises(ValueError):
        h.coordinator.apply_optimistic(h.key, FOOD, MutationKind.UPDATE, patch={"name": "x"})
