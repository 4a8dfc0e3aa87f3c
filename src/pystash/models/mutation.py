"""Mutation lifecycle records."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pystash.models._base import Entity
from pystash.models.collection import CollectionKey


class MutationKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class MutationPhase(StrEnum):
    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    SETTLED = "settled"


@dataclass(slots=True)
class MutationRecord:
    """Compensation data for one in-flight optimistic mutation.

    Returned by :meth:`MutationCoordinator.apply_optimistic`; ``snapshot``
    is a private deep copy of the entry data taken right before the
    optimistic write and is what :meth:`MutationCoordinator.rollback`
    restores.
    """

    correlation_id: str
    key: CollectionKey
    kind: MutationKind
    snapshot: list[Entity] | None
    target_id: str | None = None
    phase: MutationPhase = MutationPhase.IDLE
    result: Entity | None = field(default=None, repr=False)
