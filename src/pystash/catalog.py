"""Collection catalog.

Describes each remote collection the client knows about: which table it
lives in, how the cache orders it, where optimistic inserts go, whether it
is scoped by a parent id and whether the change feed publishes it.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable, Iterator
from typing import Literal

from pystash.exceptions import StashConfigError
from pystash.models.collection import Ordering, asc, desc

InsertPosition = Literal["start", "end"]


@dataclasses.dataclass(frozen=True)
class CollectionSpec:
    """Static description of one collection.

    Parameters
    ----------
    name : str
        Collection name used in cache keys and feed topics.
    table : str
        Remote table (defaults to ``name``).
    select : str
        PostgREST ``select`` expression for fetches.
    ordering : Ordering
        Sort order the cache maintains after every write.
    insert_at : {"start", "end"}
        Where optimistic inserts are placed before re-sorting.
    timestamps : bool
        Rows carry ``created_at``/``updated_at``.
    touch_updated_at : bool
        Optimistic updates stamp ``updated_at`` locally.
    entity_label : str or None
        Human label used in duplicate-name messages ("category").
    scope_fields : tuple[str, ...]
        Fields every key of this collection must be scoped by.
    feed : bool
        The change feed publishes this collection.
    echo_field : str or None
        Insert payload field that carries the mutation's correlation id so
        the feed listener can recognize the echo of a pending insert.
    """

    name: str
    table: str = ""
    select: str = "*"
    ordering: Ordering = ()
    insert_at: InsertPosition = "start"
    timestamps: bool = True
    touch_updated_at: bool = True
    entity_label: str | None = None
    scope_fields: tuple[str, ...] = ()
    feed: bool = False
    echo_field: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise StashConfigError("collection name is required")
        if not self.table:
            object.__setattr__(self, "table", self.name)
        if self.insert_at not in ("start", "end"):
            raise StashConfigError(f"invalid insert_at for {self.name}: {self.insert_at!r}")


class Catalog:
    """Registry of :class:`CollectionSpec` by name."""

    def __init__(self, specs: Iterable[CollectionSpec] = ()) -> None:
        self._specs: dict[str, CollectionSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: CollectionSpec) -> None:
        self._specs[spec.name] = spec

    def get(self, name: str) -> CollectionSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise StashConfigError(f"Unknown collection: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[CollectionSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


DEFAULT_COLLECTIONS: tuple[CollectionSpec, ...] = (
    CollectionSpec("food_items", ordering=(desc("created_at"),), entity_label="food item"),
    CollectionSpec("shopping_items", ordering=(desc("created_at"),), entity_label="shopping item", feed=True),
    CollectionSpec("recipes", ordering=(desc("created_at"),), entity_label="recipe", feed=True),
    CollectionSpec("cosmetics", ordering=(desc("created_at"),), entity_label="cosmetic"),
    CollectionSpec("categories", ordering=(asc("display_name"),), insert_at="end", entity_label="category"),
    CollectionSpec("units", ordering=(asc("display_name"),), insert_at="end", entity_label="unit"),
    CollectionSpec(
        "cosmetic_category_types",
        ordering=(asc("rank"), asc("display_name")),
        insert_at="end",
        entity_label="category",
    ),
    CollectionSpec(
        "cosmetic_events",
        ordering=(desc("occurred_at"),),
        scope_fields=("cosmetic_id",),
        touch_updated_at=False,
        entity_label="event",
    ),
    CollectionSpec(
        "cosmetic_reminders",
        ordering=(asc("remind_at"),),
        insert_at="end",
        scope_fields=("cosmetic_id",),
        entity_label="reminder",
    ),
    CollectionSpec("meal_plans", ordering=(asc("date"),), insert_at="end", entity_label="meal plan", feed=True),
    CollectionSpec("restaurants", ordering=(asc("name"),), insert_at="end", entity_label="restaurant", feed=True),
)

#: Single-row settings table; read and written through the client directly.
USER_SETTINGS = CollectionSpec("user_settings", entity_label="setting", touch_updated_at=False)


def default_catalog() -> Catalog:
    return Catalog(DEFAULT_COLLECTIONS)
