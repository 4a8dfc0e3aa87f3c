"""Shared helpers for the REST endpoint modules.

This module centralizes the most repeated patterns:
- encoding PostgREST equality filters and ``order`` terms
- mapping PostgREST / PostgreSQL error codes onto the exception hierarchy
- building the user-facing duplicate-entity message

It is internal to pystash and may change at any time.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pystash._constants import (
    JWT_EXPIRED_CODES,
    NO_ROWS_CODE,
    UNIQUE_VIOLATION_CODE,
    VALIDATION_CODE_PREFIXES,
)
from pystash._transport import RestResponse
from pystash.exceptions import (
    StashApiError,
    StashAuthenticationError,
    StashDuplicateError,
    StashNotFoundError,
    StashSessionExpiredError,
    StashValidationError,
)
from pystash.models.collection import Ordering


def duplicate_message(label: str | None) -> str:
    """Domain message for a unique-constraint violation."""
    if not label:
        return "An entity with this name already exists"
    article = "An" if label[:1].lower() in "aeiou" else "A"
    return f"{article} {label} with this name already exists"


def encode_filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"eq.{str(value).lower()}"
    return f"eq.{value}"


def build_query(
    *,
    select: str | None = None,
    filters: Mapping[str, Any] | None = None,
    order: Ordering = (),
) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    if select:
        params.append(("select", select))
    for field, value in (filters or {}).items():
        params.append((field, encode_filter_value(value)))
    if order:
        params.append(("order", ",".join(term.to_query() for term in order)))
    return params


def _error_fields(body: Any) -> tuple[str, str]:
    if isinstance(body, dict):
        code = str(body.get("code") or body.get("error_code") or body.get("error") or "")
        message = str(
            body.get("message") or body.get("msg") or body.get("error_description") or body.get("details") or ""
        )
        return code, message
    return "", str(body or "")


def raise_for_response(
    response: RestResponse,
    *,
    action: str,
    duplicate_label: str | None = None,
) -> None:
    """Raise the classified error for a non-2xx response.

    *action* prefixes generic messages (e.g. ``"Failed to add category"``).
    """
    if response.ok:
        return

    status = response.status
    endpoint = response.endpoint
    code, message = _error_fields(response.body)
    detail = f"{action}: {message}" if message else f"{action} (HTTP {status})"

    if code in JWT_EXPIRED_CODES or status == 401:
        raise StashSessionExpiredError(detail, code=code, endpoint=endpoint, status_code=status)
    if status == 403:
        raise StashAuthenticationError(detail, code=code, endpoint=endpoint, status_code=status)
    if code == UNIQUE_VIOLATION_CODE:
        raise StashDuplicateError(
            duplicate_message(duplicate_label),
            code=code,
            endpoint=endpoint,
            status_code=status,
        )
    if code == NO_ROWS_CODE or status == 404:
        raise StashNotFoundError(detail, code=code, endpoint=endpoint, status_code=status)
    if status in (400, 409, 422) or code.startswith(VALIDATION_CODE_PREFIXES):
        raise StashValidationError(detail, code=code, endpoint=endpoint, status_code=status)
    raise StashApiError(detail, code=code, endpoint=endpoint, status_code=status)
