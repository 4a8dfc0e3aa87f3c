"""Change feed payload parsing.

Translates raw push payloads into normalized change feed events.  The
accepted shape is the database-webhook envelope::

    {"type": "INSERT", "table": "food_items", "record": {...}, "old_record": null}

``eventType``/``new``/``old`` (realtime channel naming) are accepted as
aliases.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from pystash.state.events import ChangeFeedEvent

_logger = logging.getLogger(__name__)

_KEY_ALIASES: dict[str, str] = {
    "eventType": "type",
    "new": "record",
    "old": "old_record",
}


def _apply_aliases(payload: dict[str, Any]) -> dict[str, Any]:
    working = dict(payload)
    for old_key, new_key in _KEY_ALIASES.items():
        if old_key in working and new_key not in working:
            working[new_key] = working.pop(old_key)
    return working


def parse_change_event(payload: Any, *, collection: str | None = None) -> ChangeFeedEvent | None:
    """Parse one feed payload; ``None`` when it is not a change event.

    *payload* may be raw bytes/str (JSON) or an already decoded dict.
    *collection* fills the table name when the payload omits it (topics
    are per collection).
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError:
            _logger.debug("Change feed payload is not JSON: %s", payload[:128])
            return None
    if not isinstance(payload, dict):
        return None

    working = _apply_aliases(payload)
    if collection and not working.get("table") and not working.get("collection"):
        working["table"] = collection
    try:
        return ChangeFeedEvent.model_validate(working)
    except ValidationError:
        _logger.debug("Ignoring malformed change feed payload", exc_info=True)
        return None
