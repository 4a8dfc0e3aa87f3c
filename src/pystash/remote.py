"""Collaborator interfaces of the cache layer.

The cache components never talk HTTP or MQTT themselves; they depend on
these protocols.  :class:`pystash._api.rows.RestStore` and
:class:`pystash._mqtt.MqttChangeFeed` are the production implementations,
tests pass in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol

from pystash.models._base import Entity
from pystash.models.collection import Ordering
from pystash.session import Actor
from pystash.state.events import ChangeFeedEvent

ChangeHandler = Callable[[ChangeFeedEvent], None]
Unsubscribe = Callable[[], None]


class RemoteStore(Protocol):
    """Relational store holding the authoritative rows."""

    async def fetch(
        self,
        collection: str,
        *,
        select: str = "*",
        filters: Mapping[str, Any] | None = None,
        order: Ordering = (),
    ) -> list[Entity]: ...

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Entity: ...

    async def update(self, collection: str, entity_id: str, patch: Mapping[str, Any]) -> Entity: ...

    async def delete(self, collection: str, entity_id: str) -> None: ...

    async def upsert(self, collection: str, record: Mapping[str, Any], *, on_conflict: str) -> Entity: ...

    async def get_current_actor(self) -> Actor | None: ...


class ChangeFeed(Protocol):
    """Push channel delivering row changes of a collection.

    *on_event* is always invoked on the event loop thread.
    """

    def subscribe(
        self,
        collection: str,
        filters: Mapping[str, Any] | None,
        on_event: ChangeHandler,
    ) -> Unsubscribe: ...
