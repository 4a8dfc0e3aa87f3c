"""Deterministic cache policy.

Pure functions only: ordering, id uniqueness, freshness and fetch retry
decisions.  Nothing here touches the store or performs I/O.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from pystash.exceptions import StashAuthenticationError, StashValidationError
from pystash.models._base import Entity
from pystash.models.collection import Ordering


def _sort_value(value: Any) -> tuple[int, Any]:
    # Rank by type first so mixed-type columns never raise TypeError.
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, repr(value))


def sort_entities(entities: Iterable[Entity], ordering: Ordering) -> list[Entity]:
    """Stable multi-key sort following a collection's ordering.

    Applies one stable pass per sort field, last field first, so entities
    that compare equal keep their current relative position.  ``None``
    values go last unless the field asks for ``nulls_first``.
    """
    result = list(entities)
    for sort_field in reversed(ordering):
        name = sort_field.field
        present = [entity for entity in result if entity.get(name) is not None]
        missing = [entity for entity in result if entity.get(name) is None]
        # sort(reverse=True) preserves the order of equal elements.
        present.sort(key=lambda entity: _sort_value(entity[name]), reverse=sort_field.descending)
        result = missing + present if sort_field.nulls_first else present + missing
    return result


def dedupe_by_id(entities: Iterable[Entity]) -> tuple[list[Entity], list[str]]:
    """Keep the first entity per id; return ``(kept, dropped_ids)``."""
    seen: set[str] = set()
    kept: list[Entity] = []
    dropped: list[str] = []
    for entity in entities:
        raw_id = entity.get("id")
        if raw_id is None:
            kept.append(entity)
            continue
        key = str(raw_id)
        if key in seen:
            dropped.append(key)
            continue
        seen.add(key)
        kept.append(entity)
    return kept, dropped


def normalize_entities(entities: Iterable[Entity], ordering: Ordering) -> tuple[list[Entity], list[str]]:
    """Enforce id uniqueness, then ordering."""
    kept, dropped = dedupe_by_id(entities)
    return sort_entities(kept, ordering), dropped


def is_stale(
    *,
    last_updated: datetime | None,
    now: datetime,
    stale_time: float,
    invalidated: bool,
) -> bool:
    """Whether cached data should be refetched on the next read."""
    if invalidated or last_updated is None:
        return True
    return now - last_updated >= timedelta(seconds=stale_time)


def fetch_retry_delay(attempt: int, *, base: float, cap: float) -> float:
    """Exponential backoff for the *attempt*-th retry (0-based)."""
    if base <= 0:
        return 0.0
    return float(min(base * (2**attempt), cap))


def should_retry_fetch(exc: BaseException, *, attempt: int, max_retries: int) -> bool:
    """Fetches are retried a bounded number of times.

    Authentication and validation failures are deterministic and never
    retried; everything else (network errors, 5xx) is.
    """
    if attempt >= max_retries:
        return False
    return not isinstance(exc, (StashAuthenticationError, StashValidationError))
