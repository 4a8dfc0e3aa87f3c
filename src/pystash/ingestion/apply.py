"""Idempotent application of change feed events to collection data.

Rules:

- insert: add only when no entity with that id is present (duplicate
  delivery, or the mutation's own committed copy already there);
- update: merge fields into the matching entity, or append it when it is
  missing (treated as a missed insert);
- delete: remove the matching entity, otherwise no-op.

Entities whose id is still temporary are never touched: only the owning
mutation knows which authoritative row replaces them.  Applying the same
event twice yields the same data as applying it once.
"""

from __future__ import annotations

import copy

from pystash.models._base import Entity, is_temporary_id
from pystash.models.collection import Ordering
from pystash.state.events import ChangeFeedEvent, ChangeType
from pystash.state.policy import sort_entities


def _index_of(items: list[Entity], target_id: str) -> int | None:
    for index, entity in enumerate(items):
        if str(entity.get("id")) == target_id:
            return index
    return None


def apply_change(
    data: list[Entity] | None,
    event: ChangeFeedEvent,
    ordering: Ordering = (),
) -> list[Entity] | None:
    """Return *data* with *event* applied; the input is not modified.

    Returns *data* unchanged (same object) when the event is a no-op so
    callers can skip the cache write.
    """
    if data is None:
        # Never populated: the first fetch will load the row.
        return data
    target_id = event.target_id
    if target_id is None or is_temporary_id(target_id):
        return data

    index = _index_of(data, target_id)

    if event.type == ChangeType.INSERT:
        if index is not None:
            return data
        return sort_entities([*data, copy.deepcopy(event.record)], ordering)

    if event.type == ChangeType.UPDATE:
        items = list(data)
        if index is None:
            items.append(copy.deepcopy(event.record))
        else:
            merged = dict(items[index])
            merged.update(copy.deepcopy(event.record))
            if merged == items[index]:
                return data
            items[index] = merged
        return sort_entities(items, ordering)

    if event.type == ChangeType.DELETE:
        if index is None:
            return data
        return [entity for position, entity in enumerate(data) if position != index]

    return data
