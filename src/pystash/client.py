"""High-level async client for the Stash store."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

import aiohttp

from pystash._api.auth import sign_in_with_password
from pystash._api.rows import RestStore
from pystash._client.feed import ChangeFeedListener
from pystash._client.mutations import MutationCoordinator
from pystash._client.queries import Loader, QueryController
from pystash._mqtt import MqttChangeFeed
from pystash._transport import RestTransport
from pystash.catalog import USER_SETTINGS, Catalog, CollectionSpec, default_catalog
from pystash.config import StashConfig
from pystash.exceptions import StashAuthenticationError, StashError, StashSessionExpiredError
from pystash.models._base import Entity
from pystash.models.collection import CollectionKey, Ordering
from pystash.models.entry import CacheEntry
from pystash.models.settings import UserSettings
from pystash.remote import ChangeFeed, RemoteStore, Unsubscribe
from pystash.session import Actor, Session
from pystash.state.store import CacheStore, EntryListener

_logger = logging.getLogger(__name__)

T = TypeVar("T")


class _SessionBoundStore:
    """Runs every remote call with a live session, re-authenticating once."""

    def __init__(self, client: StashClient, inner: RemoteStore) -> None:
        self._client = client
        self._inner = inner

    async def fetch(
        self,
        collection: str,
        *,
        select: str = "*",
        filters: Mapping[str, Any] | None = None,
        order: Ordering = (),
    ) -> list[Entity]:
        return await self._client._call_with_reauth(
            lambda: self._inner.fetch(collection, select=select, filters=filters, order=order)
        )

    async def insert(self, collection: str, record: Mapping[str, Any]) -> Entity:
        return await self._client._call_with_reauth(lambda: self._inner.insert(collection, record))

    async def update(self, collection: str, entity_id: str, patch: Mapping[str, Any]) -> Entity:
        return await self._client._call_with_reauth(lambda: self._inner.update(collection, entity_id, patch))

    async def delete(self, collection: str, entity_id: str) -> None:
        await self._client._call_with_reauth(lambda: self._inner.delete(collection, entity_id))

    async def upsert(self, collection: str, record: Mapping[str, Any], *, on_conflict: str) -> Entity:
        return await self._client._call_with_reauth(
            lambda: self._inner.upsert(collection, record, on_conflict=on_conflict)
        )

    async def get_current_actor(self) -> Actor | None:
        return await self._client._call_with_reauth(self._inner.get_current_actor)


class Collection:
    """Handle on one cached collection key.

    Obtained from :meth:`StashClient.collection`.  A scoped collection whose
    scope value is ``None`` is disabled: reads return the empty entry and
    never fetch.
    """

    def __init__(self, client: StashClient, spec: CollectionSpec, key: CollectionKey) -> None:
        self._client = client
        self._spec = spec
        self._key = key

    def __repr__(self) -> str:
        return f"Collection({self._key})"

    @property
    def key(self) -> CollectionKey:
        return self._key

    @property
    def spec(self) -> CollectionSpec:
        return self._spec

    @property
    def enabled(self) -> bool:
        return all(value is not None for _field, value in self._key.scope)

    @property
    def entry(self) -> CacheEntry:
        """Current cached entry, without triggering a fetch."""
        return self._client.store.get(self._key)

    @property
    def items(self) -> list[Entity]:
        return self.entry.items

    def read(self) -> CacheEntry:
        """Return the cached entry and refresh it in the background if stale."""
        if not self.enabled:
            return self.entry
        self._client._ensure_feed(self._key, self._spec)
        return self._client.queries.read(self._key, self._client._loader_for(self._spec, self._key))

    async def refetch(self) -> CacheEntry:
        """Fetch now (joining a fetch in flight) and return the entry."""
        if not self.enabled:
            return self.entry
        self._client._ensure_feed(self._key, self._spec)
        return await self._client.queries.fetch(self._key, self._client._loader_for(self._spec, self._key))

    async def load(self) -> list[Entity]:
        """Return fresh items, fetching only when the cache is stale."""
        if not self.enabled:
            return []
        entry = self.read()
        if entry.data is None or self._client.queries.is_fetching(self._key):
            entry = await self._client.queries.wait(self._key)
        if entry.is_error and entry.data is None:
            raise StashError(entry.error or f"Failed to load {self._key}")
        return entry.items

    async def wait(self) -> CacheEntry:
        return await self._client.queries.wait(self._key)

    def _require_enabled(self) -> None:
        if not self.enabled:
            missing = [field for field, value in self._key.scope if value is None]
            raise ValueError(f"{self._spec.name} requires {', '.join(missing)}")

    async def add(self, fields: Mapping[str, Any] | None = None, **values: Any) -> Entity:
        """Insert a row; returns the authoritative entity."""
        self._require_enabled()
        return await self._client.mutations.insert(self._key, self._spec, {**(fields or {}), **values})

    async def update(self, entity_id: str | int, patch: Mapping[str, Any] | None = None, **values: Any) -> Entity:
        """Merge changes into the row with *entity_id*; returns the updated row."""
        self._require_enabled()
        return await self._client.mutations.update(self._key, self._spec, entity_id, {**(patch or {}), **values})

    async def remove(self, entity_id: str | int) -> None:
        self._require_enabled()
        await self._client.mutations.delete(self._key, self._spec, entity_id)

    def subscribe(self, listener: EntryListener) -> Unsubscribe:
        """Call *listener* with the entry after every cache change."""
        return self._client.store.subscribe(self._key, listener)

    def watch(self) -> bool:
        """Attach the change feed to this key; ``False`` when unavailable."""
        if not self.enabled:
            return False
        return self._client._ensure_feed(self._key, self._spec)


class StashClient:
    """Async client for the Stash store.

    Usage::

        async with StashClient(config) as client:
            await client.sign_in()
            foods = client.collection("food_items")
            await foods.refetch()
            await foods.add(name="Eggs")

    ``remote`` and ``feed`` replace the HTTP store and the MQTT change feed
    (tests, alternative backends).
    """

    def __init__(
        self,
        config: StashConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        remote: RemoteStore | None = None,
        feed: ChangeFeed | None = None,
        catalog: Catalog | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._transport: RestTransport | None = None
        self._session: Session | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._catalog = catalog or default_catalog()
        self._store = CacheStore()
        for spec in self._catalog:
            self._store.configure(spec.name, spec.ordering)
        self._store.configure(USER_SETTINGS.name, USER_SETTINGS.ordering)
        self._raw_remote = remote
        self._feed = feed
        self._mqtt: MqttChangeFeed | None = None
        self._queries: QueryController | None = None
        self._mutations: MutationCoordinator | None = None
        self._listener: ChangeFeedListener | None = None
        self._remote: _SessionBoundStore | None = None
        self._feed_subscriptions: dict[CollectionKey, Unsubscribe] = {}
        self._sign_in_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> StashClient:
        self._loop = asyncio.get_running_loop()
        inner = self._raw_remote
        if inner is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = RestTransport(self._config, self._http_session)
            inner = RestStore(self._transport)
        remote = _SessionBoundStore(self, inner)

        self._queries = QueryController(
            self._store,
            stale_time=self._config.stale_time,
            max_retries=self._config.fetch_retries,
            retry_delay=self._config.fetch_retry_delay,
            retry_max_delay=self._config.fetch_retry_max_delay,
        )
        self._mutations = MutationCoordinator(self._store, self._queries, remote)
        self._remote = remote

        if self._feed is None and self._config.feed_enabled:
            await self._start_mqtt()
        if self._feed is not None:
            self._listener = ChangeFeedListener(self._store, self._feed, is_pending=self._mutations.is_pending)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Detach feeds, stop background work and drop the cache."""
        for unsubscribe in self._feed_subscriptions.values():
            unsubscribe()
        self._feed_subscriptions.clear()
        if self._queries is not None:
            await self._queries.close()
        await self._stop_mqtt()
        self._store.clear()
        self._session = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._transport = None
        self._loop = None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> StashConfig:
        return self._config

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def queries(self) -> QueryController:
        if self._queries is None:
            raise StashError("Client not initialized. Use 'async with StashClient(...) as client:'")
        return self._queries

    @property
    def mutations(self) -> MutationCoordinator:
        if self._mutations is None:
            raise StashError("Client not initialized. Use 'async with StashClient(...) as client:'")
        return self._mutations

    @property
    def remote(self) -> RemoteStore:
        """The remote store, bound to the session (re-authenticates once)."""
        if self._remote is None:
            raise StashError("Client not initialized. Use 'async with StashClient(...) as client:'")
        return self._remote

    @property
    def session(self) -> Session | None:
        return self._session

    def collection(self, name: str, **scope: Any) -> Collection:
        """Return the handle for *name*, scoped by the given fields.

        Scope fields the collection requires but that are not given are
        treated as ``None``, which disables the handle.
        """
        spec = self._catalog.get(name)
        filters = {field: None for field in spec.scope_fields}
        filters.update(scope)
        return Collection(self, spec, CollectionKey.of(name, filters))

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _has_credentials(self) -> bool:
        return bool(self._config.email and self._config.password)

    async def sign_in(self, email: str | None = None, password: str | None = None) -> Session:
        """Authenticate with e-mail and password."""
        if self._transport is None:
            raise StashError("Password sign-in requires the HTTP transport")
        email = email or self._config.email
        password = password or self._config.password
        if not email or not password:
            raise StashAuthenticationError("No credentials configured (set STASH_EMAIL and STASH_PASSWORD)")
        session = await sign_in_with_password(
            self._transport,
            email=email,
            password=password,
            default_ttl=self._config.session_ttl,
        )
        self._session = session
        self._transport.set_access_token(session.access_token)
        _logger.debug("Signed in as %s", session.user_id)
        return session

    async def ensure_session(self) -> Session | None:
        """Return an active session, signing in again if it expired.

        ``None`` when no session exists and no credentials are configured.
        """
        if self._session is not None and not self._session.is_expired:
            return self._session
        if self._transport is None or not self._has_credentials():
            return None
        async with self._sign_in_lock:
            if self._session is None or self._session.is_expired:
                await self.sign_in()
        return self._session

    def invalidate_session(self) -> None:
        """Force session invalidation (next call will re-authenticate)."""
        self._session = None
        if self._transport is not None:
            self._transport.set_access_token(None)

    async def sign_out(self) -> None:
        """Forget the session and every cached collection."""
        self.invalidate_session()
        for unsubscribe in self._feed_subscriptions.values():
            unsubscribe()
        self._feed_subscriptions.clear()
        if self._queries is not None:
            await self._queries.close()
        self._store.clear()

    async def _call_with_reauth(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run an API call, retrying once on session expiry."""
        await self.ensure_session()
        try:
            return await fn()
        except StashSessionExpiredError:
            if self._transport is None or not self._has_credentials():
                raise
            self.invalidate_session()
            await self.ensure_session()
            return await fn()

    # ------------------------------------------------------------------
    # Cache wiring
    # ------------------------------------------------------------------

    def _loader_for(self, spec: CollectionSpec, key: CollectionKey) -> Loader:
        async def _load() -> list[Entity]:
            return await self.remote.fetch(spec.table, select=spec.select, filters=key.filters, order=spec.ordering)

        return _load

    def _ensure_feed(self, key: CollectionKey, spec: CollectionSpec) -> bool:
        if self._listener is None or not spec.feed:
            return False
        if key not in self._feed_subscriptions:
            self._feed_subscriptions[key] = self._listener.attach(key, spec)
        return True

    async def _start_mqtt(self) -> None:
        """Best-effort feed startup (failures must not break REST flow)."""
        loop = self._loop or asyncio.get_running_loop()
        runtime = MqttChangeFeed(self._config.mqtt, loop=loop, logger=_logger)
        try:
            await loop.run_in_executor(None, runtime.start)
        except Exception:
            _logger.warning("MQTT change feed startup failed", exc_info=True)
            return
        self._mqtt = runtime
        self._feed = runtime

    async def _stop_mqtt(self) -> None:
        runtime = self._mqtt
        self._mqtt = None
        if runtime is None:
            return
        self._feed = None
        self._listener = None
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, runtime.stop)

    # ------------------------------------------------------------------
    # User settings
    # ------------------------------------------------------------------

    def _settings_key(self) -> CollectionKey:
        return CollectionKey.of(USER_SETTINGS.name)

    async def _require_actor(self) -> Actor:
        actor = await self.remote.get_current_actor()
        if actor is None:
            raise StashAuthenticationError("User not authenticated")
        return actor

    async def get_settings(self) -> UserSettings:
        """Return the signed-in user's settings row (defaults when absent)."""
        key = self._settings_key()
        queries = self.queries
        if self._store.get(key).data is None or queries.is_stale(key):

            async def _load() -> list[Entity]:
                actor = await self._require_actor()
                return await self.remote.fetch(USER_SETTINGS.table, filters={"user_id": actor.id})

            await queries.fetch(key, _load)
        rows = self._store.get(key).items
        return UserSettings.model_validate(rows[0]) if rows else UserSettings()

    async def update_preferences(self, **preferences: Any) -> UserSettings:
        """Merge *preferences* into the stored preference document."""
        actor = await self._require_actor()
        current = await self.get_settings()
        merged = current.preferences.merged(**preferences)
        row = await self.remote.upsert(
            USER_SETTINGS.table,
            {"user_id": actor.id, "preferences": merged.to_document()},
            on_conflict="user_id",
        )
        self.queries.invalidate(self._settings_key())
        return UserSettings.model_validate(row)

    async def set_api_key(self, api_key: str | None) -> UserSettings:
        """Store (or clear, with ``None``) the user's Gemini API key."""
        actor = await self._require_actor()
        value = api_key.strip() if api_key else None
        row = await self.remote.upsert(
            USER_SETTINGS.table,
            {"user_id": actor.id, "gemini_api_key": value or None},
            on_conflict="user_id",
        )
        self.queries.invalidate(self._settings_key())
        return UserSettings.model_validate(row)
