"""MQTT change feed runtime.

Row changes are published per collection on ``<topic_prefix>/<collection>``
as JSON webhook envelopes.  The paho client runs its network loop on its
own thread; parsed events are handed to the asyncio loop with
``call_soon_threadsafe`` so handlers always run on the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any, cast

import paho.mqtt.client as mqtt

from pystash.config import MqttFeedConfig
from pystash.ingestion.feed import parse_change_event
from pystash.remote import ChangeHandler, Unsubscribe
from pystash.state.events import ChangeFeedEvent

ClientFactory = Callable[[MqttFeedConfig], Any]


def _default_client_factory(config: MqttFeedConfig) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=config.client_id or "",
        protocol=mqtt.MQTTv5,
    )
    if config.username:
        client.username_pw_set(config.username, config.password)
    if config.tls:
        client.tls_set()
    return client


def _matches(filters: Mapping[str, Any] | None, record: Mapping[str, Any]) -> bool:
    if not filters:
        return True
    return all(field not in record or record[field] == value for field, value in filters.items())


class MqttChangeFeed:
    """:class:`pystash.remote.ChangeFeed` backed by a threaded paho client.

    All local subscribers of a collection share one broker subscription.
    """

    def __init__(
        self,
        config: MqttFeedConfig,
        *,
        loop: asyncio.AbstractEventLoop,
        client_factory: ClientFactory = _default_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._client_factory = client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._handlers: dict[str, list[tuple[dict[str, Any] | None, ChangeHandler]]] = {}

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def topic_for(self, collection: str) -> str:
        return f"{self._config.topic_prefix.rstrip('/')}/{collection}"

    def _collection_for(self, topic: str) -> str:
        return topic.rsplit("/", 1)[-1]

    def _topics(self) -> list[str]:
        with self._lock:
            return [self.topic_for(collection) for collection in self._handlers]

    def start(self) -> None:
        """Connect to the broker and start the network loop."""
        self.stop()
        self._logger.debug(
            "MQTT feed start requested host=%s port=%s prefix=%s",
            self._config.host,
            self._config.port,
            self._config.topic_prefix,
        )
        client = self._client_factory(self._config)
        client.enable_logger(self._logger)

        def on_connect(
            c: Any,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if getattr(reason_code, "value", reason_code) != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)
            for topic in self._topics():
                self._logger.debug("MQTT subscribing topic=%s", topic)
                c.subscribe(topic, qos=1)

        def on_message(_c: Any, _userdata: Any, msg: Any) -> None:
            collection = self._collection_for(msg.topic)
            event = parse_change_event(msg.payload, collection=collection)
            if event is None:
                self._logger.debug("MQTT payload on %s is not a change event", msg.topic)
                return
            self._logger.debug("MQTT change event topic=%s type=%s id=%s", msg.topic, event.type, event.target_id)
            self._loop.call_soon_threadsafe(self._dispatch, collection, event)

        def on_disconnect(
            _client: Any,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(self._config.host, self._config.port, keepalive=self._config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the current client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    def subscribe(
        self,
        collection: str,
        filters: Mapping[str, Any] | None,
        on_event: ChangeHandler,
    ) -> Unsubscribe:
        entry = (dict(filters) if filters else None, on_event)
        with self._lock:
            handlers = self._handlers.setdefault(collection, [])
            first = not handlers
            handlers.append(entry)
        if first and self._client is not None:
            self._client.subscribe(self.topic_for(collection), qos=1)

        def _unsubscribe() -> None:
            with self._lock:
                current = self._handlers.get(collection, [])
                remaining = [cand for cand in current if cand is not entry]
                if remaining:
                    self._handlers[collection] = remaining
                    return
                if self._handlers.pop(collection, None) is None:
                    return
            if self._client is not None:
                self._client.unsubscribe(self.topic_for(collection))

        return _unsubscribe

    def subscriber_count(self, collection: str) -> int:
        with self._lock:
            return len(self._handlers.get(collection, []))

    def _dispatch(self, collection: str, event: ChangeFeedEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(collection, []))
        for filters, handler in handlers:
            if not _matches(filters, event.target):
                continue
            try:
                handler(event)
            except Exception:
                self._logger.debug("Change feed handler for %s failed", collection, exc_info=True)
