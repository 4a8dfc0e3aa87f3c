"""Helpers for safe debug logging.

Requests carry secrets (passwords, API keys, bearer tokens) in headers and
bodies, and user settings rows store third-party API keys.  Everything
routed to DEBUG logs goes through :func:`redact_for_log` first.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "password",
        "apikey",
        "authorization",
        "cookie",
        "token",
    }
)
_SENSITIVE_SUFFIXES: tuple[str, ...] = ("_token", "_key", "_secret")


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SENSITIVE_KEYS or lowered.endswith(_SENSITIVE_SUFFIXES)


def redact_for_log(value: Any, *, max_string: int = 256, _depth: int = 0) -> Any:
    """Return a redacted copy of *value* suitable for debug logs.

    Mappings have sensitive keys masked, sequences are redacted item by
    item and long strings are truncated.  Unknown objects are rendered
    with ``repr`` so internals are never walked.
    """
    if _depth > 16:
        return "<max-depth>"

    if value is None or isinstance(value, (bool, int, float)):
        return value

    if isinstance(value, str):
        return value if len(value) <= max_string else f"{value[:max_string]}…<truncated>"

    if isinstance(value, (bytes, bytearray)):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        return {
            str(key): "<redacted>"
            if _is_sensitive(str(key))
            else redact_for_log(item, max_string=max_string, _depth=_depth + 1)
            for key, item in value.items()
        }

    if isinstance(value, Sequence):
        return [redact_for_log(item, max_string=max_string, _depth=_depth + 1) for item in value]

    return repr(value)
