"""Collection keys and ordering."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SortField(BaseModel):
    """One ``ORDER BY`` term of a collection."""

    model_config = ConfigDict(frozen=True)

    field: str
    descending: bool = False
    nulls_first: bool = False

    def to_query(self) -> str:
        """Render as a PostgREST ``order`` term (``field.desc.nullslast``)."""
        direction = "desc" if self.descending else "asc"
        nulls = "nullsfirst" if self.nulls_first else "nullslast"
        return f"{self.field}.{direction}.{nulls}"


Ordering = tuple[SortField, ...]


def asc(field: str, *, nulls_first: bool = False) -> SortField:
    return SortField(field=field, descending=False, nulls_first=nulls_first)


def desc(field: str, *, nulls_first: bool = False) -> SortField:
    return SortField(field=field, descending=True, nulls_first=nulls_first)


class CollectionKey(BaseModel):
    """Identifies one cached, independently fetchable set of entities.

    ``scope`` holds equality filters (e.g. ``(("cosmetic_id", "c-1"),)``),
    kept sorted so equal scopes produce equal keys.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    scope: tuple[tuple[str, Any], ...] = Field(default=())

    @classmethod
    def of(cls, name: str, scope: Mapping[str, Any] | None = None, **filters: Any) -> CollectionKey:
        merged = dict(scope or {})
        merged.update(filters)
        return cls(name=name, scope=tuple(sorted(merged.items())))

    @property
    def filters(self) -> dict[str, Any]:
        return dict(self.scope)

    def matches(self, record: Mapping[str, Any]) -> bool:
        """Whether *record* belongs to this key's scope.

        Fields missing from the record (e.g. DELETE payloads that only carry
        the primary key) are not held against it.
        """
        for field, value in self.scope:
            if field in record and record[field] != value:
                return False
        return True

    def __str__(self) -> str:
        if not self.scope:
            return self.name
        rendered = ",".join(f"{field}={value}" for field, value in self.scope)
        return f"{self.name}[{rendered}]"
