"""Custom exception hierarchy for pystash."""

from __future__ import annotations


class StashError(Exception):
    """Base exception for all pystash errors."""


class StashConfigError(StashError):
    """Invalid or missing configuration."""


class StashNetworkError(StashError):
    """Transport-level failure (connection, 5xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class StashApiError(StashError):
    """The remote store rejected a request (application-level error)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "",
        endpoint: str = "",
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class StashAuthenticationError(StashApiError):
    """No authenticated actor, or credentials rejected."""


class StashSessionExpiredError(StashAuthenticationError):
    """Access token rejected by the server.

    Raised when an authenticated call fails with an expired/invalid JWT
    (e.g. ``PGRST301`` or HTTP 401).  The client catches this internally
    to trigger automatic re-authentication.
    """


class StashValidationError(StashApiError):
    """Request payload violated a constraint of the remote store."""


class StashDuplicateError(StashValidationError):
    """Unique-constraint violation (PostgreSQL code ``23505``).

    The message is the user-facing domain message, e.g.
    ``"A category with this name already exists"``.
    """


class StashNotFoundError(StashApiError):
    """Target row of an update/delete does not exist."""
