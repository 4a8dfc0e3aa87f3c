"""HTTP transport for the Stash REST and auth endpoints."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from pystash._constants import USER_AGENT
from pystash._redact import redact_for_log
from pystash.config import StashConfig
from pystash.exceptions import StashNetworkError

_logger = logging.getLogger(__name__)

QueryParams = Sequence[tuple[str, str]]


@dataclass(frozen=True, slots=True)
class RestResponse:
    """A decoded response with a status below 500."""

    status: int
    body: Any
    endpoint: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`RestTransport`) concrete.
    """

    @property
    def access_token(self) -> str | None: ...

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: QueryParams | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> RestResponse: ...


class RestTransport:
    """aiohttp transport adding API-key and bearer-token headers.

    Raises :class:`StashNetworkError` for connection failures, 5xx
    responses and undecodable bodies; every other status is returned as a
    :class:`RestResponse` for the endpoint layer to classify.
    """

    def __init__(self, config: StashConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._access_token: str | None = None

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    def _build_headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json",
            "user-agent": USER_AGENT,
            "apikey": self._config.api_key,
            "authorization": f"Bearer {self._access_token or self._config.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: QueryParams | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> RestResponse:
        url = f"{self._config.rest_url}{endpoint}"
        body = None if json_body is None else json.dumps(json_body, separators=(",", ":"))

        _logger.debug(
            "%s %s params=%s body=%s",
            method,
            url,
            list(params or ()),
            redact_for_log(json_body),
        )

        try:
            async with self._http.request(
                method,
                url,
                params=list(params or ()),
                data=body,
                headers=self._build_headers(headers),
            ) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise StashNetworkError(
                f"Request to {endpoint} failed: {exc}",
                endpoint=endpoint,
            ) from exc

        if status >= 500:
            raise StashNetworkError(
                f"HTTP {status} from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            )

        if not text.strip():
            return RestResponse(status=status, body=None, endpoint=endpoint)

        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StashNetworkError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                status_code=status,
                endpoint=endpoint,
            ) from exc

        _logger.debug("%s %s -> %s %s", method, url, status, redact_for_log(decoded))
        return RestResponse(status=status, body=decoded, endpoint=endpoint)
