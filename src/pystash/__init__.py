"""pystash - Async Python client for the Stash store with an optimistic cache."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pystash")
except PackageNotFoundError:
    __version__ = "0+local"
from pystash.catalog import Catalog, CollectionSpec, default_catalog
from pystash.client import Collection, StashClient
from pystash.config import MqttFeedConfig, StashConfig
from pystash.exceptions import (
    StashApiError,
    StashAuthenticationError,
    StashConfigError,
    StashDuplicateError,
    StashError,
    StashNetworkError,
    StashNotFoundError,
    StashSessionExpiredError,
    StashValidationError,
)
from pystash.models import (
    CacheEntry,
    CollectionKey,
    Entity,
    MutationKind,
    MutationPhase,
    MutationRecord,
    QueryStatus,
    SortField,
    UserPreferences,
    UserSettings,
    asc,
    desc,
)
from pystash.remote import ChangeFeed, RemoteStore
from pystash.session import Actor, Session
from pystash.state.events import ChangeFeedEvent, ChangeType

__all__ = [
    "__version__",
    "Actor",
    "CacheEntry",
    "Catalog",
    "ChangeFeed",
    "ChangeFeedEvent",
    "ChangeType",
    "Collection",
    "CollectionKey",
    "CollectionSpec",
    "Entity",
    "MqttFeedConfig",
    "MutationKind",
    "MutationPhase",
    "MutationRecord",
    "QueryStatus",
    "RemoteStore",
    "Session",
    "SortField",
    "StashApiError",
    "StashAuthenticationError",
    "StashClient",
    "StashConfig",
    "StashConfigError",
    "StashDuplicateError",
    "StashError",
    "StashNetworkError",
    "StashNotFoundError",
    "StashSessionExpiredError",
    "StashValidationError",
    "UserPreferences",
    "UserSettings",
    "asc",
    "default_catalog",
    "desc",
]
