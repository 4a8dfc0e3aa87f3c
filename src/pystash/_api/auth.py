"""Auth endpoints.

Endpoints:
  - POST /auth/v1/token?grant_type=password
  - GET  /auth/v1/user
"""

from __future__ import annotations

import logging

from pystash._api._common import raise_for_response
from pystash._constants import AUTH_PREFIX
from pystash._redact import redact_for_log
from pystash._transport import Transport
from pystash.exceptions import StashAuthenticationError
from pystash.session import Actor, Session

_logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = f"{AUTH_PREFIX}/token"
USER_ENDPOINT = f"{AUTH_PREFIX}/user"


async def sign_in_with_password(
    transport: Transport,
    *,
    email: str,
    password: str,
    default_ttl: float,
) -> Session:
    """Exchange e-mail and password for a :class:`Session`.

    Raises
    ------
    StashAuthenticationError
        If the credentials are rejected or the response carries no token.
    """
    response = await transport.request(
        "POST",
        TOKEN_ENDPOINT,
        params=[("grant_type", "password")],
        json_body={"email": email, "password": password},
    )
    if response.status in (400, 401, 403):
        body = response.body if isinstance(response.body, dict) else {}
        message = body.get("error_description") or body.get("msg") or body.get("message") or "invalid credentials"
        raise StashAuthenticationError(
            f"Sign-in failed: {message}",
            code=str(body.get("error_code") or body.get("error") or ""),
            endpoint=TOKEN_ENDPOINT,
            status_code=response.status,
        )
    raise_for_response(response, action="Sign-in failed")

    payload = response.body if isinstance(response.body, dict) else {}
    _logger.debug("Sign-in response: %s", redact_for_log(payload))
    if not payload.get("access_token") or not isinstance(payload.get("user"), dict):
        raise StashAuthenticationError(
            "Sign-in response did not contain a session",
            endpoint=TOKEN_ENDPOINT,
            status_code=response.status,
        )
    return Session.from_token_response(payload, default_ttl=default_ttl)


async def fetch_current_user(transport: Transport) -> Actor | None:
    """Return the actor behind the transport's bearer token.

    Raises :class:`StashSessionExpiredError` when the token is no longer
    accepted, so callers can re-authenticate.
    """
    response = await transport.request("GET", USER_ENDPOINT)
    raise_for_response(response, action="Fetching current user failed")
    if not isinstance(response.body, dict) or not response.body.get("id"):
        return None
    return Actor.model_validate(response.body)
