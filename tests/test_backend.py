from __future__ import annotations

import json
from typing import Any

import pytest
from pydantic import ValidationError

from pylaban._mqtt import ChangeEvent, decode_change_payload
from pylaban.backend import RestBackend
from pylaban.exceptions import LabanError, TransientRemoteError
from pylaban.models.query import FilterSpec


class _FakeTransport:
    def __init__(self, response: Any = None) -> None:
        self.response = response
        self.calls: list[dict[str, Any]] = []

    async def request_json(
        self,
        method: str,
        endpoint: str,
        *,
        params: Any = None,
        body: Any = None,
        headers: Any = None,
    ) -> Any:
        self.calls.append({"method": method, "endpoint": endpoint, "params": params, "body": body, "headers": headers})
        return self.response


class _FakeFeed:
    def __init__(self) -> None:
        self.is_running = True
        self.topics: list[str] = []

    def subscribe(self, topic: str) -> None:
        self.topics.append(topic)

    def unsubscribe(self, topic: str) -> None:
        self.topics.remove(topic)


def test_filter_spec_query_params() -> None:
    spec = FilterSpec(eq={"status": "open", "urgent": True}, order=("created_at", False), limit=50)

    assert spec.to_query_params() == {
        "select": "*",
        "status": "eq.open",
        "urgent": "eq.true",
        "order": "created_at.desc",
        "limit": "50",
    }


def test_filter_cache_key_ignores_insertion_order() -> None:
    a = FilterSpec(eq={"status": "open", "region": "NCR"})
    b = FilterSpec(eq={"region": "NCR", "status": "open"})

    assert a.cache_key("help-request") == b.cache_key("help-request")
    assert a.cache_key("help-request") != a.cache_key("road-report")


def test_filter_limit_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        FilterSpec(limit=0)


def test_decode_change_payload() -> None:
    payload = json.dumps({"type": "insert", "record": {"id": 7}}).encode()

    event = decode_change_payload(payload, "laban/help_requests")

    assert event == ChangeEvent(
        table="help_requests",
        event_type="INSERT",
        record={"id": 7},
        topic="laban/help_requests",
    )
    assert event.matches("*")
    assert event.matches("insert")
    assert not event.matches("DELETE")


def test_decode_change_payload_rejects_unknown_type() -> None:
    with pytest.raises(LabanError):
        decode_change_payload(b'{"type": "TRUNCATE"}')


@pytest.mark.asyncio
async def test_insert_returns_confirmed_row() -> None:
    transport = _FakeTransport([{"id": 12, "message": "flood"}])
    backend = RestBackend(transport)

    row = await backend.insert("help_requests", [{"message": "flood"}])

    assert row == {"id": 12, "message": "flood"}
    call = transport.calls[0]
    assert call["method"] == "POST"
    assert call["endpoint"] == "/rest/v1/help_requests"
    assert call["headers"] == {"prefer": "return=representation"}


@pytest.mark.asyncio
async def test_insert_without_id_is_transient_failure() -> None:
    backend = RestBackend(_FakeTransport([]))

    with pytest.raises(TransientRemoteError):
        await backend.insert("help_requests", [{"message": "flood"}])


@pytest.mark.asyncio
async def test_select_passes_filter() -> None:
    transport = _FakeTransport([{"id": 1}, "junk"])
    backend = RestBackend(transport)

    rows = await backend.select("road_reports", FilterSpec(eq={"status": "blocked"}, limit=10))

    assert rows == [{"id": 1}]
    assert transport.calls[0]["params"] == {"select": "*", "status": "eq.blocked", "limit": "10"}


def test_subscribe_requires_running_feed() -> None:
    backend = RestBackend(_FakeTransport())

    with pytest.raises(TransientRemoteError):
        backend.subscribe("help_requests", "*", lambda event: None)


def test_dispatch_fans_out_by_table_and_filter() -> None:
    feed = _FakeFeed()
    backend = RestBackend(_FakeTransport(), feed=feed, topic_prefix="laban")  # type: ignore[arg-type]
    inserts: list[ChangeEvent] = []
    everything: list[ChangeEvent] = []

    def broken(_event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    backend.subscribe("help_requests", "*", broken)
    h_insert = backend.subscribe("help_requests", "INSERT", inserts.append)
    backend.subscribe("help_requests", "*", everything.append)
    backend.subscribe("road_reports", "*", everything.append)

    backend.dispatch(ChangeEvent(table="help_requests", event_type="UPDATE"))
    backend.dispatch(ChangeEvent(table="help_requests", event_type="INSERT"))

    assert [e.event_type for e in inserts] == ["INSERT"]
    assert [e.event_type for e in everything] == ["UPDATE", "INSERT"]
    assert feed.topics.count("laban/help_requests") == 1

    backend.unsubscribe(h_insert)
    assert "laban/help_requests" in feed.topics


def test_table_topic_released_after_last_handle() -> None:
    feed = _FakeFeed()
    backend = RestBackend(_FakeTransport(), feed=feed, topic_prefix="laban")  # type: ignore[arg-type]

    first = backend.subscribe("help_requests", "*", lambda _e: None)
    second = backend.subscribe("help_requests", "INSERT", lambda _e: None)
    assert feed.topics == ["laban/help_requests"]

    backend.unsubscribe(first)
    assert feed.topics == ["laban/help_requests"]
    backend.unsubscribe(second)
    assert feed.topics == []

    backend.subscribe("help_requests", "*", lambda _e: None)
    assert feed.topics == ["laban/help_requests"]
