from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import pytest

from pystash.exceptions import StashDuplicateError, StashNotFoundError
from pystash.models._base import Entity, utc_now_iso
from pystash.models.collection import Ordering
from pystash.session import Actor
from pystash.state.events import ChangeFeedEvent
from pystash.state.policy import sort_entities


@dataclass
class FakeRemoteStore:
    """In-memory RemoteStore with per-operation failure injection and gates."""

    actor: Actor | None = field(default_factory=lambda: Actor(id="user-1", email="user@example.com"))
    tables: dict[str, list[Entity]] = field(default_factory=dict)
    unique: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    failures: dict[str, list[BaseException]] = field(default_factory=dict)
    gates: dict[str, asyncio.Event] = field(default_factory=dict)
    _ids: itertools.count = field(default_factory=lambda: itertools.count(100))

    def seed(self, table: str, rows: list[Entity]) -> None:
        self.tables[table] = [dict(row) for row in rows]

    def fail(self, op: str, exc: BaseException) -> None:
        self.failures.setdefault(op, []).append(exc)

    def hold(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[op] = gate
        return gate

    def count(self, op: str) -> int:
        return sum(1 for name, _table in self.calls if name == op)

    async def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        gate = self.gates.pop(op, None)
        if gate is not None:
            await gate.wait()
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)

    async def fetch(
        self,
        collection: str,
        *,
        select: str = "*",
        filters: Mapping[str, Any] | None = None,
        order: Ordering = (),
    ) -> list[Entity]:
        await self._enter("fetch", collection)
        rows = [
            dict(row)
            for row in self.tables.get(collection, [])
            if all(row.get(name) == value for name, value in (filters or {}).items())
        ]
        return sort_entities(rows, order)

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Entity:
        await self._enter("insert", collection)
        rows = self.tables.setdefault(collection, [])
        unique_field = self.unique.get(collection)
        if unique_field and any(row.get(unique_field) == record.get(unique_field) for row in rows):
            raise StashDuplicateError(
                "duplicate key value violates unique constraint",
                code="23505",
                endpoint=f"/rest/v1/{collection}",
                status_code=409,
            )
        now = utc_now_iso()
        row = {"created_at": now, "updated_at": now, **record, "id": str(next(self._ids))}
        rows.append(row)
        return dict(row)

    async def update(self, collection: str, entity_id: str, patch: Mapping[str, Any]) -> Entity:
        await self._enter("update", collection)
        for row in self.tables.get(collection, []):
            if row.get("id") == entity_id:
                row.update(patch)
                return dict(row)
        raise StashNotFoundError(f"no row {entity_id}", code="PGRST116")

    async def delete(self, collection: str, entity_id: str) -> None:
        await self._enter("delete", collection)
        rows = self.tables.get(collection, [])
        remaining = [row for row in rows if row.get("id") != entity_id]
        if len(remaining) == len(rows):
            raise StashNotFoundError(f"no row {entity_id}", code="PGRST116")
        self.tables[collection] = remaining

    async def upsert(self, collection: str, record: Mapping[str, Any], *, on_conflict: str) -> Entity:
        await self._enter("upsert", collection)
        rows = self.tables.setdefault(collection, [])
        for row in rows:
            if row.get(on_conflict) == record.get(on_conflict):
                row.update(record)
                return dict(row)
        row = {**record, "id": str(next(self._ids))}
        rows.append(row)
        return dict(row)

    async def get_current_actor(self) -> Actor | None:
        self.calls.append(("actor", ""))
        return self.actor


@dataclass
class FakeChangeFeed:
    """Synchronous ChangeFeed; ``emit`` delivers to matching subscribers."""

    handlers: dict[str, list[tuple[dict[str, Any] | None, Callable[[ChangeFeedEvent], None]]]] = field(
        default_factory=dict
    )

    def subscribe(
        self,
        collection: str,
        filters: Mapping[str, Any] | None,
        on_event: Callable[[ChangeFeedEvent], None],
    ) -> Callable[[], None]:
        entry = (dict(filters) if filters else None, on_event)
        self.handlers.setdefault(collection, []).append(entry)

        def _unsubscribe() -> None:
            self.handlers[collection] = [cand for cand in self.handlers.get(collection, []) if cand is not entry]

        return _unsubscribe

    def emit(
        self,
        collection: str,
        type_: str,
        record: Entity | None = None,
        old_record: Entity | None = None,
    ) -> ChangeFeedEvent:
        event = ChangeFeedEvent.model_validate(
            {"type": type_, "table": collection, "record": record, "old_record": old_record}
        )
        for filters, handler in list(self.handlers.get(collection, [])):
            target = event.target
            if filters and any(name in target and target[name] != value for name, value in filters.items()):
                continue
            handler(event)
        return event


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def feed() -> FakeChangeFeed:
    return FakeChangeFeed()
