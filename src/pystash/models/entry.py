"""Cache entry model."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from pystash.models._base import Entity
from pystash.models.collection import CollectionKey


class QueryStatus(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class CacheEntry(BaseModel):
    """Cached state of one collection key.

    ``data`` is ``None`` until the first fetch or optimistic insert.  On a
    failed fetch ``data`` keeps its previous value and ``status`` becomes
    :attr:`QueryStatus.ERROR` with the failure message in ``error``.
    """

    model_config = ConfigDict(extra="forbid")

    key: CollectionKey
    data: list[Entity] | None = None
    status: QueryStatus = QueryStatus.IDLE
    last_updated: datetime | None = None
    error: str | None = None
    is_invalidated: bool = False
    is_fetching: bool = False
    fetch_failure_count: int = 0

    @property
    def items(self) -> list[Entity]:
        return self.data if self.data is not None else []

    @property
    def is_loading(self) -> bool:
        return self.status == QueryStatus.LOADING

    @property
    def is_error(self) -> bool:
        return self.status == QueryStatus.ERROR

    def ids(self) -> list[str]:
        return [str(entity.get("id")) for entity in self.items]

    def find(self, entity_id: str) -> Entity | None:
        for entity in self.items:
            if str(entity.get("id")) == entity_id:
                return entity
        return None
