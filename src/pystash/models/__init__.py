"""Public data models."""

from pystash.models._base import Entity, StashBaseModel, entity_id, is_temporary_id, utc_now_iso
from pystash.models.collection import CollectionKey, Ordering, SortField, asc, desc
from pystash.models.entry import CacheEntry, QueryStatus
from pystash.models.mutation import MutationKind, MutationPhase, MutationRecord
from pystash.models.settings import UserPreferences, UserSettings

__all__ = [
    "CacheEntry",
    "CollectionKey",
    "Entity",
    "MutationKind",
    "MutationPhase",
    "MutationRecord",
    "Ordering",
    "QueryStatus",
    "SortField",
    "StashBaseModel",
    "UserPreferences",
    "UserSettings",
    "asc",
    "desc",
    "entity_id",
    "is_temporary_id",
    "utc_now_iso",
]
