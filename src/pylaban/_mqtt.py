"""Internal MQTT live-change feed: payload parsing and threaded runtime."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, cast

import paho.mqtt.client as mqtt

from pylaban.exceptions import LabanError

_CHANGE_TYPES = frozenset({"INSERT", "UPDATE", "DELETE"})


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized row-change event for one table."""

    table: str
    event_type: str
    record: dict[str, Any] = field(default_factory=dict)
    old_record: dict[str, Any] = field(default_factory=dict)
    topic: str = ""

    def matches(self, event_filter: str) -> bool:
        return event_filter == "*" or event_filter.upper() == self.event_type


def table_topic(prefix: str, table: str) -> str:
    return f"{prefix.rstrip('/')}/{table}"


def decode_change_payload(payload: bytes, topic: str = "") -> ChangeEvent:
    """Parse a change payload (``{"type", "table", "record", "old_record"}``)."""
    parsed = json.loads(payload.decode("utf-8"))
    if not isinstance(parsed, dict):
        raise LabanError("Change payload is not a JSON object")

    event_type = str(parsed.get("type") or parsed.get("eventType") or "").upper()
    if event_type not in _CHANGE_TYPES:
        raise LabanError(f"Unknown change type {event_type!r}")

    table = parsed.get("table")
    if not isinstance(table, str) or not table:
        table = topic.rsplit("/", 1)[-1]

    record = parsed.get("record") or parsed.get("new") or {}
    old_record = parsed.get("old_record") or parsed.get("old") or {}
    return ChangeEvent(
        table=table,
        event_type=event_type,
        record=record if isinstance(record, dict) else {},
        old_record=old_record if isinstance(old_record, dict) else {},
        topic=topic,
    )


class LiveFeedRuntime:
    """Threaded paho-mqtt runtime that emits parsed change events onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_event: Callable[[ChangeEvent], None],
        keepalive: int = 120,
        tls: bool = True,
        username: str | None = None,
        password: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_event = on_event
        self._keepalive = keepalive
        self._tls = tls
        self._username = username
        self._password = password
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._topics: set[str] = set()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def subscribe(self, topic: str) -> None:
        """Subscribe now if connected, and again after every reconnect."""
        if topic in self._topics:
            return
        self._topics.add(topic)
        if self._client is not None and self._running:
            self._client.subscribe(topic, qos=1)

    def unsubscribe(self, topic: str) -> None:
        if topic not in self._topics:
            return
        self._topics.discard(topic)
        if self._client is not None and self._running:
            self._client.unsubscribe(topic)

    def start(self, host: str, port: int) -> None:
        """Connect to the broker and start the network loop thread."""
        self.stop(keep_topics=True)
        self._logger.debug("MQTT runtime start requested host=%s port=%s", host, port)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=f"laban_{secrets.token_hex(6)}",
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._username:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            for topic in sorted(self._topics):
                c.subscribe(topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                event = decode_change_payload(msg.payload, msg.topic)
            except Exception:
                self._logger.debug("MQTT change payload parse failure topic=%s", msg.topic, exc_info=True)
                return
            self._loop.call_soon_threadsafe(self._on_event, event)

        def on_disconnect(
            _client: mqtt.Client,
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

        client.connect(host, port, keepalive=self._keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self, *, keep_topics: bool = False) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        if not keep_topics:
            self._topics.clear()

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
