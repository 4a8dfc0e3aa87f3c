"""Optimistic mutations for cached collections.

Every mutation walks ``Idle -> OptimisticApplied -> (Committed |
RolledBack) -> Settled``:

1. the actor precondition is checked before the cache is touched;
2. in-flight fetches of the key are cancelled, the entry is snapshotted and
   the change is applied locally;
3. the remote call runs;
4. commit splices the authoritative row in place of the temporary one, or
   rollback restores the snapshot verbatim and re-raises;
5. settle always releases the bookkeeping and invalidates the key.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pystash._api._common import duplicate_message
from pystash._client.queries import QueryController
from pystash.catalog import CollectionSpec
from pystash.exceptions import StashAuthenticationError, StashDuplicateError
from pystash.models._base import Entity, utc_now_iso
from pystash.models.collection import CollectionKey
from pystash.models.mutation import MutationKind, MutationPhase, MutationRecord
from pystash.remote import RemoteStore
from pystash.session import Actor
from pystash.state.snapshots import SnapshotManager
from pystash.state.store import CacheStore
from pystash.state.temporary import TemporaryEntityAllocator

_logger = logging.getLogger(__name__)

RemoteCall = Callable[[MutationRecord, Actor], Awaitable[Entity | None]]


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


class MutationCoordinator:
    """Applies writes optimistically and reconciles them with the server."""

    def __init__(
        self,
        store: CacheStore,
        queries: QueryController,
        remote: RemoteStore,
        *,
        snapshots: SnapshotManager | None = None,
        allocator: TemporaryEntityAllocator | None = None,
    ) -> None:
        self._store = store
        self._queries = queries
        self._remote = remote
        self._snapshots = snapshots or SnapshotManager(store)
        self._allocator = allocator or TemporaryEntityAllocator()
        self._records: dict[str, MutationRecord] = {}

    @property
    def snapshots(self) -> SnapshotManager:
        return self._snapshots

    @property
    def allocator(self) -> TemporaryEntityAllocator:
        return self._allocator

    def is_pending(self, correlation_id: str) -> bool:
        """Whether *correlation_id* belongs to a mutation not yet settled."""
        return correlation_id in self._records

    def in_flight(self) -> list[MutationRecord]:
        return list(self._records.values())

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------

    def apply_optimistic(
        self,
        key: CollectionKey,
        spec: CollectionSpec,
        kind: MutationKind,
        *,
        fields: Mapping[str, Any] | None = None,
        target_id: str | int | None = None,
        patch: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> MutationRecord:
        """Snapshot *key* and apply the change locally.

        Returns the record needed to commit or roll the change back.
        """
        if kind != MutationKind.INSERT and target_id is None:
            raise ValueError(f"{kind} mutation requires a target id")
        if target_id is not None:
            target_id = str(target_id)
        cid = correlation_id or _new_correlation_id()
        self._queries.cancel(key)
        snapshot = self._snapshots.capture(cid, key)
        record = MutationRecord(correlation_id=cid, key=key, kind=kind, snapshot=snapshot, target_id=target_id)

        if kind == MutationKind.INSERT:
            entity = self._allocator.allocate(cid, fields or {}, timestamps=spec.timestamps)
            record.target_id = entity["id"]

            def _insert(data: list[Entity] | None) -> list[Entity]:
                items = list(data or [])
                return [entity, *items] if spec.insert_at == "start" else [*items, entity]

            self._store.update(key, _insert)
        elif kind == MutationKind.UPDATE:
            changes = dict(patch or {})

            def _update(data: list[Entity] | None) -> list[Entity] | None:
                if data is None:
                    return None
                return [{**entity, **changes} if str(entity.get("id")) == target_id else entity for entity in data]

            self._store.update(key, _update)
        else:

            def _delete(data: list[Entity] | None) -> list[Entity] | None:
                if data is None:
                    return None
                return [entity for entity in data if str(entity.get("id")) != target_id]

            self._store.update(key, _delete)

        record.phase = MutationPhase.OPTIMISTIC_APPLIED
        self._records[cid] = record
        _logger.debug("Applied optimistic %s on %s target=%s", kind, key, record.target_id)
        return record

    def commit(self, record: MutationRecord, result: Entity | None) -> None:
        """Reconcile the cache with the server's answer."""
        record.result = result
        if record.kind == MutationKind.INSERT and result is not None:
            ordering = self._store.ordering_for(record.key)
            self._store.update(
                record.key,
                lambda data: self._allocator.resolve(record.correlation_id, data, result, ordering),
            )
        record.phase = MutationPhase.COMMITTED

    def rollback(self, record: MutationRecord) -> None:
        """Restore the entry exactly as it was before the optimistic write.

        Temporary entities of concurrent mutations that settled meanwhile
        are dropped from the restored data; they have no owner left.
        """
        if not self._snapshots.restore(record.correlation_id):
            self._store.set(record.key, record.snapshot)
        data = self._store.get_data(record.key)
        if data is not None and any(self._is_orphan(entity) for entity in data):
            self._store.set(record.key, [entity for entity in data if not self._is_orphan(entity)])
        record.phase = MutationPhase.ROLLED_BACK

    def _is_orphan(self, entity: Entity) -> bool:
        entity_id = entity.get("id")
        return self._allocator.is_temporary(entity_id) and not self._allocator.is_live(str(entity_id))

    def settle(self, record: MutationRecord) -> None:
        """Release bookkeeping and schedule the reconciling refetch.

        While other mutations on the same key are still pending the entry
        is only marked stale; the last of them to settle refetches, so a
        refetch never wipes a pending temporary entity.
        """
        self._snapshots.release(record.correlation_id)
        self._allocator.discard(record.correlation_id)
        self._records.pop(record.correlation_id, None)
        record.phase = MutationPhase.SETTLED
        if any(other.key == record.key for other in self._records.values()):
            _logger.debug("Deferring refetch of %s until pending mutations settle", record.key)
            self._store.invalidate(record.key)
            return
        self._queries.invalidate(record.key)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def run(
        self,
        key: CollectionKey,
        spec: CollectionSpec,
        kind: MutationKind,
        remote_call: RemoteCall,
        *,
        fields: Mapping[str, Any] | None = None,
        target_id: str | int | None = None,
        patch: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> MutationRecord:
        """Drive one mutation through its whole lifecycle.

        Raises
        ------
        StashAuthenticationError
            If no actor is signed in; the cache is left untouched.
        StashDuplicateError
            On a unique-constraint violation, with the collection's
            duplicate-name message.
        """
        actor = await self._remote.get_current_actor()
        if actor is None:
            raise StashAuthenticationError("User not authenticated")

        record = self.apply_optimistic(
            key,
            spec,
            kind,
            fields=fields,
            target_id=target_id,
            patch=patch,
            correlation_id=correlation_id,
        )
        try:
            result = await remote_call(record, actor)
        except StashDuplicateError as exc:
            self.rollback(record)
            message = duplicate_message(spec.entity_label)
            _logger.warning("%s on %s rolled back: %s", kind, key, message)
            raise StashDuplicateError(
                message,
                code=exc.code,
                endpoint=exc.endpoint,
                status_code=exc.status_code,
            ) from exc
        except (Exception, asyncio.CancelledError) as exc:
            self.rollback(record)
            _logger.warning("%s on %s rolled back: %s: %s", kind, key, type(exc).__name__, exc)
            raise
        else:
            self.commit(record, result)
            return record
        finally:
            self.settle(record)

    async def insert(self, key: CollectionKey, spec: CollectionSpec, fields: Mapping[str, Any]) -> Entity:
        """Insert a row; the cache shows a temporary entity until commit."""
        cid = _new_correlation_id()
        values = dict(fields)
        if spec.echo_field:
            values[spec.echo_field] = cid

        async def _call(record: MutationRecord, actor: Actor) -> Entity:
            payload = {**key.filters, **values, "user_id": actor.id}
            return await self._remote.insert(spec.table, payload)

        record = await self.run(
            key,
            spec,
            MutationKind.INSERT,
            _call,
            fields={**key.filters, **values},
            correlation_id=cid,
        )
        assert record.result is not None  # noqa: S101
        return record.result

    async def update(
        self,
        key: CollectionKey,
        spec: CollectionSpec,
        entity_id: str | int,
        patch: Mapping[str, Any],
    ) -> Entity:
        """Merge *patch* into the row with *entity_id*."""
        row_id = str(entity_id)
        changes = dict(patch)
        changes.pop("id", None)
        if spec.timestamps and spec.touch_updated_at:
            changes["updated_at"] = utc_now_iso()

        async def _call(record: MutationRecord, actor: Actor) -> Entity:
            return await self._remote.update(spec.table, row_id, changes)

        record = await self.run(key, spec, MutationKind.UPDATE, _call, target_id=row_id, patch=changes)
        assert record.result is not None  # noqa: S101
        return record.result

    async def delete(self, key: CollectionKey, spec: CollectionSpec, entity_id: str | int) -> None:
        """Remove the row with *entity_id*."""
        row_id = str(entity_id)

        async def _call(record: MutationRecord, actor: Actor) -> None:
            await self._remote.delete(spec.table, row_id)

        await self.run(key, spec, MutationKind.DELETE, _call, target_id=row_id)
