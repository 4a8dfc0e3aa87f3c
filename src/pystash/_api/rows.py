"""PostgREST row endpoints: /rest/v1/<table>.

Reads use ``select``/``order``/``<field>=eq.<value>`` query parameters;
writes ask for ``Prefer: return=representation`` so the authoritative row
comes back with the response.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pystash._api._common import build_query, encode_filter_value, raise_for_response
from pystash._api.auth import fetch_current_user
from pystash._constants import REST_PREFIX
from pystash._transport import Transport
from pystash.exceptions import StashApiError, StashNotFoundError
from pystash.models._base import Entity
from pystash.models.collection import Ordering
from pystash.session import Actor

_logger = logging.getLogger(__name__)

_RETURN_REPRESENTATION = {"prefer": "return=representation"}


def table_endpoint(table: str) -> str:
    return f"{REST_PREFIX}/{table}"


def _single_row(body: Any, *, endpoint: str, action: str) -> Entity:
    rows = body if isinstance(body, list) else [body] if isinstance(body, dict) else []
    if not rows:
        raise StashNotFoundError(f"{action}: no row matched", code="PGRST116", endpoint=endpoint)
    row = rows[0]
    if not isinstance(row, dict):
        raise StashApiError(f"{action}: unexpected row {row!r}", code="invalid_row", endpoint=endpoint)
    return row


async def fetch_rows(
    transport: Transport,
    table: str,
    *,
    select: str = "*",
    filters: Mapping[str, Any] | None = None,
    order: Ordering = (),
) -> list[Entity]:
    endpoint = table_endpoint(table)
    response = await transport.request(
        "GET",
        endpoint,
        params=build_query(select=select, filters=filters, order=order),
    )
    raise_for_response(response, action=f"Failed to fetch {table}")
    if response.body is None:
        return []
    if not isinstance(response.body, list):
        raise StashApiError(
            f"Failed to fetch {table}: expected a list, got {type(response.body).__name__}",
            code="invalid_rows",
            endpoint=endpoint,
        )
    return [row for row in response.body if isinstance(row, dict)]


async def insert_row(transport: Transport, table: str, record: Mapping[str, Any]) -> Entity:
    endpoint = table_endpoint(table)
    response = await transport.request(
        "POST",
        endpoint,
        params=[("select", "*")],
        json_body=dict(record),
        headers=_RETURN_REPRESENTATION,
    )
    raise_for_response(response, action=f"Failed to insert into {table}")
    return _single_row(response.body, endpoint=endpoint, action=f"Insert into {table}")


async def update_row(
    transport: Transport,
    table: str,
    row_id: str,
    patch: Mapping[str, Any],
) -> Entity:
    endpoint = table_endpoint(table)
    response = await transport.request(
        "PATCH",
        endpoint,
        params=[("id", encode_filter_value(row_id)), ("select", "*")],
        json_body=dict(patch),
        headers=_RETURN_REPRESENTATION,
    )
    raise_for_response(response, action=f"Failed to update {table} row {row_id}")
    return _single_row(response.body, endpoint=endpoint, action=f"Update of {table} row {row_id}")


async def delete_row(transport: Transport, table: str, row_id: str) -> None:
    endpoint = table_endpoint(table)
    response = await transport.request(
        "DELETE",
        endpoint,
        params=[("id", encode_filter_value(row_id)), ("select", "id")],
        headers=_RETURN_REPRESENTATION,
    )
    raise_for_response(response, action=f"Failed to delete {table} row {row_id}")
    _single_row(response.body, endpoint=endpoint, action=f"Delete of {table} row {row_id}")


async def upsert_row(
    transport: Transport,
    table: str,
    record: Mapping[str, Any],
    *,
    on_conflict: str,
) -> Entity:
    endpoint = table_endpoint(table)
    response = await transport.request(
        "POST",
        endpoint,
        params=[("on_conflict", on_conflict), ("select", "*")],
        json_body=dict(record),
        headers={"prefer": "return=representation,resolution=merge-duplicates"},
    )
    raise_for_response(response, action=f"Failed to save {table}")
    return _single_row(response.body, endpoint=endpoint, action=f"Upsert into {table}")


class RestStore:
    """:class:`pystash.remote.RemoteStore` over the PostgREST HTTP API."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def fetch(
        self,
        collection: str,
        *,
        select: str = "*",
        filters: Mapping[str, Any] | None = None,
        order: Ordering = (),
    ) -> list[Entity]:
        return await fetch_rows(self._transport, collection, select=select, filters=filters, order=order)

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Entity:
        return await insert_row(self._transport, collection, record)

    async def update(self, collection: str, entity_id: str, patch: Mapping[str, Any]) -> Entity:
        return await update_row(self._transport, collection, entity_id, patch)

    async def delete(self, collection: str, entity_id: str) -> None:
        await delete_row(self._transport, collection, entity_id)

    async def upsert(self, collection: str, record: Mapping[str, Any], *, on_conflict: str) -> Entity:
        return await upsert_row(self._transport, collection, record, on_conflict=on_conflict)

    async def get_current_actor(self) -> Actor | None:
        if not self._transport.access_token:
            return None
        return await fetch_current_user(self._transport)
