"""HTTP JSON transport for the PostgREST-style backend."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from pylaban.config import LabanConfig
from pylaban.exceptions import TransientRemoteError

_logger = logging.getLogger(__name__)

USER_AGENT = "pylaban/1"


class Transport(Protocol):
    """Structural transport interface used by the backend.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`RestTransport`) concrete.
    """

    async def request_json(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any: ...


class RestTransport:
    """aiohttp transport adding auth headers and mapping every failure to :class:`TransientRemoteError`."""

    def __init__(self, config: LabanConfig, http_session: aiohttp.ClientSession) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    def _headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers: dict[str, str] = {
            "accept": "application/json",
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }
        if self._config.api_key:
            headers["apikey"] = self._config.api_key
            headers["authorization"] = f"Bearer {self._config.api_key}"
        if extra:
            headers.update(extra)
        return headers

    async def request_json(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body."""
        if not self._config.backend_url:
            raise TransientRemoteError("No backend configured", endpoint=endpoint)

        url = f"{self._config.backend_url.rstrip('/')}{endpoint}"
        data = json.dumps(body, separators=(",", ":")) if body is not None else None

        _logger.debug("%s %s", method, url)

        try:
            async with self._http.request(
                method,
                url,
                params=dict(params) if params else None,
                data=data,
                headers=self._headers(headers),
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise TransientRemoteError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except TransientRemoteError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientRemoteError(
                f"Request to {endpoint} failed: {exc!r}",
                endpoint=endpoint,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise TransientRemoteError(
                f"Invalid JSON from {endpoint}: {text[:200]}",
                endpoint=endpoint,
            ) from exc
