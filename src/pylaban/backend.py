"""Remote backend boundary.

:class:`RemoteBackend` is the interface the sync coordinator consumes.
:class:`RestBackend` implements it against a PostgREST-style REST API
(``/rest/v1/<table>``) with live row changes delivered over MQTT.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pylaban._mqtt import ChangeEvent, LiveFeedRuntime, table_topic
from pylaban._transport import Transport
from pylaban.exceptions import TransientRemoteError
from pylaban.models.query import FilterSpec

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


class RemoteBackend(Protocol):
    """Consumed backend operations. All remote failures raise :class:`TransientRemoteError`."""

    async def insert(self, table: str, records: list[dict[str, Any]]) -> dict[str, Any]: ...

    async def select(self, table: str, filter_spec: FilterSpec) -> list[dict[str, Any]]: ...

    def subscribe(self, table: str, event_filter: str, callback: ChangeCallback) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...


@dataclass(frozen=True)
class LiveHandle:
    handle_id: int
    table: str
    event_filter: str
    callback: ChangeCallback


class RestBackend:
    """Backend over a :class:`~pylaban._transport.Transport` and an optional MQTT feed."""

    def __init__(
        self,
        transport: Transport,
        *,
        feed: LiveFeedRuntime | None = None,
        topic_prefix: str = "laban",
    ) -> None:
        self._transport = transport
        self._feed = feed
        self._topic_prefix = topic_prefix
        self._handles: dict[int, LiveHandle] = {}
        self._ids = itertools.count(1)

    @staticmethod
    def _endpoint(table: str) -> str:
        return f"/rest/v1/{table}"

    async def insert(self, table: str, records: list[dict[str, Any]]) -> dict[str, Any]:
        """Insert rows and return the first confirmed row, including its server id."""
        endpoint = self._endpoint(table)
        response = await self._transport.request_json(
            "POST",
            endpoint,
            body=records,
            headers={"prefer": "return=representation"},
        )
        row = response[0] if isinstance(response, list) and response else response
        if not isinstance(row, dict) or row.get("id") in (None, ""):
            raise TransientRemoteError(f"Insert into {table} returned no confirmed row", endpoint=endpoint)
        return row

    async def select(self, table: str, filter_spec: FilterSpec) -> list[dict[str, Any]]:
        endpoint = self._endpoint(table)
        response = await self._transport.request_json("GET", endpoint, params=filter_spec.to_query_params())
        if response is None:
            return []
        if not isinstance(response, list):
            raise TransientRemoteError(f"Select from {table} did not return a list", endpoint=endpoint)
        return [row for row in response if isinstance(row, dict)]

    def subscribe(self, table: str, event_filter: str, callback: ChangeCallback) -> LiveHandle:
        feed = self._feed
        if feed is None or not feed.is_running:
            raise TransientRemoteError("Live change feed is not running", endpoint=table)
        # One broker subscription per table, released when its last handle goes.
        already = any(h.table == table for h in self._handles.values())
        handle = LiveHandle(handle_id=next(self._ids), table=table, event_filter=event_filter, callback=callback)
        self._handles[handle.handle_id] = handle
        if not already:
            feed.subscribe(table_topic(self._topic_prefix, table))
        return handle

    def unsubscribe(self, handle: Any) -> None:
        if not isinstance(handle, LiveHandle) or self._handles.pop(handle.handle_id, None) is None:
            return
        still_used = any(h.table == handle.table for h in self._handles.values())
        if not still_used and self._feed is not None:
            self._feed.unsubscribe(table_topic(self._topic_prefix, handle.table))

    def dispatch(self, event: ChangeEvent) -> None:
        """Deliver a change event to matching subscribers (runs on the event loop)."""
        for handle in list(self._handles.values()):
            if handle.table != event.table or not event.matches(handle.event_filter):
                continue
            try:
                handle.callback(event)
            except Exception:
                _logger.warning("Live change callback for %s failed", handle.table, exc_info=True)
