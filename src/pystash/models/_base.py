"""Base model and shared entity helpers.

Rows travel through the cache as plain ``dict`` entities; only metadata
(keys, entries, feed events, settings) is modelled with pydantic.

:class:`StashBaseModel` is the base for loosely shaped JSON documents
stored inside rows (e.g. user preferences):

* ``alias_generator=to_camel`` so camelCase document keys map to
  snake_case fields.
* Blank strings are dropped before validation so field defaults apply.
* Unknown keys are preserved in ``model_extra`` but never interpreted.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from pystash._constants import TEMP_ID_PREFIX

Entity = dict[str, Any]
"""One row of a collection; always carries an ``id``."""


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string, the format rows use."""
    return datetime.now(UTC).isoformat()


def entity_id(entity: Entity) -> str | None:
    value = entity.get("id")
    if value is None:
        return None
    return str(value)


def is_temporary_id(value: Any) -> bool:
    """Whether *value* is a locally synthesized id."""
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


class StashBaseModel(BaseModel):
    """Base for JSON documents embedded in rows."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_blank_values(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        return {
            key: value
            for key, value in values.items()
            if value is not None and not (isinstance(value, str) and not value.strip())
        }
