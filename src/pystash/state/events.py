"""Normalized change feed events.

Every push transport converts its payloads into :class:`ChangeFeedEvent`.
Only the ingestion/apply layer is allowed to merge them into cache data.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from pystash.models._base import Entity


class ChangeType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeFeedEvent(BaseModel):
    """One insert/update/delete delivered by the change feed.

    Delivery is at-least-once and unordered relative to in-flight
    mutations.  DELETE events usually carry only the primary key, in
    ``old_record``; :attr:`target` picks whichever record is populated.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    type: ChangeType
    collection: str = Field(default="", validation_alias=AliasChoices("collection", "table"))
    record: Entity = Field(default_factory=dict)
    old_record: Entity = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value if value is not None else {}

    @property
    def target(self) -> Entity:
        if self.type == ChangeType.DELETE:
            return self.old_record or self.record
        return self.record or self.old_record

    @property
    def target_id(self) -> str | None:
        value = self.target.get("id")
        return None if value is None else str(value)
