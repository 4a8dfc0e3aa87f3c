"""Placeholder entities for inserts not yet acknowledged by the server."""

from __future__ import annotations

import copy
import time
from collections.abc import Callable, Mapping
from typing import Any

from pystash._constants import TEMP_ID_PREFIX, TEMP_USER_ID
from pystash.models._base import Entity, is_temporary_id, utc_now_iso
from pystash.models.collection import Ordering
from pystash.state.policy import sort_entities


def _now_ms() -> int:
    return int(time.time() * 1000)


class TemporaryEntityAllocator:
    """Issues ``temp-`` ids and splices authoritative rows in their place.

    Ids are ``temp-<millis>-<seq>``: millis never decreases within one
    allocator (clock steps backwards are clamped) and seq disambiguates
    allocations in the same millisecond, so ids never collide within a
    session and never look like persisted ids.
    """

    def __init__(self, *, clock_ms: Callable[[], int] = _now_ms) -> None:
        self._clock_ms = clock_ms
        self._last_ms = 0
        self._seq = 0
        self._by_correlation: dict[str, str] = {}

    def next_id(self) -> str:
        now = max(self._clock_ms(), self._last_ms)
        if now == self._last_ms:
            self._seq += 1
        else:
            self._last_ms = now
            self._seq = 0
        return f"{TEMP_ID_PREFIX}{now}-{self._seq}"

    def allocate(
        self,
        correlation_id: str,
        fields: Mapping[str, Any],
        *,
        timestamps: bool = True,
    ) -> Entity:
        """Build the optimistic entity for an insert."""
        if correlation_id in self._by_correlation:
            raise ValueError(f"temporary entity already allocated for mutation {correlation_id}")
        temp_id = self.next_id()
        entity: Entity = copy.deepcopy(dict(fields))
        entity["id"] = temp_id
        entity.setdefault("user_id", TEMP_USER_ID)
        if timestamps:
            now = utc_now_iso()
            entity.setdefault("created_at", now)
            entity.setdefault("updated_at", now)
        self._by_correlation[correlation_id] = temp_id
        return entity

    def temp_id(self, correlation_id: str) -> str | None:
        return self._by_correlation.get(correlation_id)

    def pending(self, correlation_id: str) -> bool:
        return correlation_id in self._by_correlation

    def is_live(self, temp_id: str) -> bool:
        """Whether *temp_id* belongs to an allocation not yet resolved or discarded."""
        return temp_id in self._by_correlation.values()

    @staticmethod
    def is_temporary(entity_id: Any) -> bool:
        return is_temporary_id(entity_id)

    def resolve(
        self,
        correlation_id: str,
        data: list[Entity] | None,
        entity: Entity,
        ordering: Ordering = (),
    ) -> list[Entity]:
        """Replace this mutation's temporary entity with *entity*.

        The authoritative entity takes the temporary's array slot and the
        result is stable-sorted, so it only moves when the ordering demands.
        If the real id is already present (e.g. the change feed delivered it
        first) the temporary is dropped instead; if the temporary is gone
        (e.g. a refetch replaced the data) the entity is added.
        """
        temp_id = self._by_correlation.pop(correlation_id, None)
        items = list(data or [])
        real_id = entity.get("id")
        already_present = real_id is not None and any(
            cand.get("id") == real_id for cand in items if cand.get("id") != temp_id
        )

        result: list[Entity] = []
        placed = False
        for cand in items:
            if temp_id is not None and cand.get("id") == temp_id:
                if not already_present:
                    result.append(copy.deepcopy(entity))
                    placed = True
                continue
            result.append(cand)
        if not placed and not already_present:
            result.append(copy.deepcopy(entity))
        return sort_entities(result, ordering)

    def discard(self, correlation_id: str) -> None:
        self._by_correlation.pop(correlation_id, None)
