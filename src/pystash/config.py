"""Client configuration for pystash."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pystash._constants import (
    DEFAULT_FETCH_RETRIES,
    DEFAULT_FETCH_RETRY_DELAY,
    DEFAULT_FETCH_RETRY_MAX_DELAY,
    DEFAULT_STALE_TIME,
)
from pystash.exceptions import StashConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class MqttFeedConfig:
    """Broker settings for the MQTT change feed.

    Change events for a collection are published on
    ``<topic_prefix>/<collection>``.
    """

    host: str = "localhost"
    port: int = 8883
    tls: bool = True
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "stash/changes"
    keepalive: int = 120
    client_id: str | None = None


@dataclasses.dataclass(frozen=True)
class StashConfig:
    """Client configuration.

    Parameters
    ----------
    base_url : str
        Base URL of the Stash backend (REST under ``/rest/v1``, auth under
        ``/auth/v1``).
    api_key : str
        Project API key sent as the ``apikey`` header on every request.
    email : str or None
        Account e-mail used for password sign-in.
    password : str or None
        Account password used for password sign-in.
    session_ttl : float
        Fallback access-token lifetime in seconds when the auth server does
        not return ``expires_in``.  ``0`` disables expiry.
    stale_time : float
        Seconds after a successful fetch during which cached collection
        data counts as fresh.  Reads of stale entries trigger a background
        refetch.
    fetch_retries : int
        Retries after a failed collection fetch before the error status is
        surfaced.  Mutations are never retried.
    fetch_retry_delay : float
        Base delay of the exponential fetch backoff, in seconds.
    fetch_retry_max_delay : float
        Upper bound for a single backoff delay, in seconds.
    feed_enabled : bool
        Start the MQTT change feed and attach listeners to collections
        that publish changes.
    mqtt : MqttFeedConfig
        Broker settings for the change feed.
    """

    base_url: str
    api_key: str
    email: str | None = None
    password: str | None = None
    session_ttl: float = 3600.0
    stale_time: float = DEFAULT_STALE_TIME
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    fetch_retry_delay: float = DEFAULT_FETCH_RETRY_DELAY
    fetch_retry_max_delay: float = DEFAULT_FETCH_RETRY_MAX_DELAY
    feed_enabled: bool = False
    mqtt: MqttFeedConfig = dataclasses.field(default_factory=MqttFeedConfig)

    def __post_init__(self) -> None:
        if not self.base_url:
            raise StashConfigError("base_url is required")
        if self.fetch_retries < 0:
            raise StashConfigError("fetch_retries must be >= 0")
        if self.stale_time < 0:
            raise StashConfigError("stale_time must be >= 0")

    @property
    def rest_url(self) -> str:
        return self.base_url.rstrip("/")

    @classmethod
    def from_env(cls, **overrides: Any) -> StashConfig:
        """Create configuration from environment variables.

        Reads ``STASH_URL``, ``STASH_API_KEY`` and optional ``STASH_*``
        variables.  Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        StashConfig
            Populated configuration.
        """
        env = os.environ

        mqtt_kwargs: dict[str, Any] = {}
        _ENV_MQTT_MAP = {
            "STASH_MQTT_HOST": "host",
            "STASH_MQTT_USERNAME": "username",
            "STASH_MQTT_PASSWORD": "password",
            "STASH_MQTT_TOPIC_PREFIX": "topic_prefix",
            "STASH_MQTT_CLIENT_ID": "client_id",
        }
        for env_key, field_name in _ENV_MQTT_MAP.items():
            val = env.get(env_key)
            if val is not None:
                mqtt_kwargs[field_name] = val

        port_env = env.get("STASH_MQTT_PORT")
        if port_env is not None:
            mqtt_kwargs["port"] = int(port_env)
        keepalive_env = env.get("STASH_MQTT_KEEPALIVE")
        if keepalive_env is not None:
            mqtt_kwargs["keepalive"] = int(keepalive_env)
        if "STASH_MQTT_TLS" in env:
            mqtt_kwargs["tls"] = _env_bool(env.get("STASH_MQTT_TLS"), True)

        # Allow overriding broker fields via a nested dict
        mqtt_overrides = overrides.pop("mqtt", None)
        if isinstance(mqtt_overrides, dict):
            mqtt_kwargs.update(mqtt_overrides)
        elif isinstance(mqtt_overrides, MqttFeedConfig):
            mqtt_kwargs = dataclasses.asdict(mqtt_overrides)

        _ENV_CONFIG_MAP = {
            "STASH_URL": "base_url",
            "STASH_API_KEY": "api_key",
            "STASH_EMAIL": "email",
            "STASH_PASSWORD": "password",
        }
        config_kwargs: dict[str, Any] = {"mqtt": MqttFeedConfig(**mqtt_kwargs)}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_FLOAT_MAP = {
            "STASH_SESSION_TTL": "session_ttl",
            "STASH_STALE_TIME": "stale_time",
            "STASH_FETCH_RETRY_DELAY": "fetch_retry_delay",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        retries_env = env.get("STASH_FETCH_RETRIES")
        if retries_env is not None and "fetch_retries" not in overrides:
            config_kwargs["fetch_retries"] = int(retries_env)

        if "feed_enabled" not in overrides:
            config_kwargs["feed_enabled"] = _env_bool(env.get("STASH_FEED_ENABLED"), False)

        config_kwargs.update(overrides)

        if "base_url" not in config_kwargs or "api_key" not in config_kwargs:
            raise StashConfigError("STASH_URL and STASH_API_KEY must be set")
        return cls(**config_kwargs)
