"""Session state management for authenticated API calls."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

#: Default access-token lifetime in seconds when the auth server omits
#: ``expires_in``.
DEFAULT_SESSION_TTL: float = 3600.0


class Actor(BaseModel):
    """The authenticated user on whose behalf writes are made."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    email: str | None = None
    role: str | None = None


class Session(BaseModel):
    """Immutable session state after a successful sign-in.

    Parameters
    ----------
    access_token : str
        Bearer token sent with every authenticated request.
    refresh_token : str or None
        Token for refreshing the access token (kept for callers; the client
        re-authenticates with the password grant instead).
    actor : Actor
        The signed-in user.
    created_at : float
        Monotonic timestamp (``time.monotonic()``) of session creation.
    ttl : float
        Time-to-live in seconds.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        validate_default=True,
        str_strip_whitespace=True,
    )

    access_token: str
    refresh_token: str | None = None
    actor: Actor
    created_at: float = Field(default_factory=time.monotonic)
    ttl: float = DEFAULT_SESSION_TTL

    @classmethod
    def from_token_response(cls, payload: dict[str, Any], *, default_ttl: float) -> Session:
        """Build a session from an ``/auth/v1/token`` response body."""
        expires_in = payload.get("expires_in")
        ttl = float(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else default_ttl
        return cls(
            access_token=str(payload.get("access_token") or ""),
            refresh_token=payload.get("refresh_token"),
            actor=Actor.model_validate(payload.get("user") or {}),
            ttl=ttl if ttl > 0 else float("inf"),
        )

    @property
    def user_id(self) -> str:
        return self.actor.id

    @property
    def is_expired(self) -> bool:
        """Whether the session has exceeded its TTL."""
        return (time.monotonic() - self.created_at) >= self.ttl

    @property
    def age(self) -> float:
        """Seconds since the session was created."""
        return time.monotonic() - self.created_at
