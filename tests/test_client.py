from __future__ import annotations

import threading
from typing import Any

import aiohttp
import pytest

from pylaban.client import LabanClient
from pylaban.config import LabanConfig
from pylaban.connectivity import ConnectivityMonitor
from pylaban.exceptions import LabanError
from pylaban.models.query import QuerySource
from pylaban.storage import MemoryStore

HERE = {"latitude": 14.5995, "longitude": 120.9842}


@pytest.mark.asyncio
async def test_offline_only_client_queues_and_shares_help_requests() -> None:
    medium = MemoryStore()
    config = LabanConfig(device_id="alpha")

    async with LabanClient(config, medium=medium) as client:
        client.start_mesh(HERE)
        record = await client.submit("help-request", {"message": "trapped", "latitude": 14.5996, "longitude": 120.9843})
        report = await client.submit("road-report", {"status": "blocked"})

        assert record.provisional
        assert report.provisional
        assert client.coordinator.pending_count() == 2
        assert [r.id for r in client.relay.local_records()] == [record.id]
        assert client.connection_status().backend_available is False
        assert (await client.query("road-report")).source == QuerySource.UNAVAILABLE
        assert medium.get("mesh/alpha/push") is not None

    assert not client.relay.is_running


@pytest.mark.asyncio
async def test_relaying_can_be_disabled() -> None:
    async with LabanClient(LabanConfig(), relay_offline_submissions=False) as client:
        client.start_mesh(HERE)
        await client.submit("help-request", {"message": "trapped"})

        assert client.relay.local_records() == []
        client.stop_mesh()


def test_coordinator_requires_open_client() -> None:
    client = LabanClient(LabanConfig())

    with pytest.raises(LabanError):
        _ = client.coordinator


@pytest.mark.asyncio
async def test_injected_empty_stores_are_used() -> None:
    store = MemoryStore()
    medium = MemoryStore()

    async with (
        LabanClient(LabanConfig(device_id="alpha"), store=store, medium=medium) as alpha,
        LabanClient(LabanConfig(device_id="bravo"), medium=medium) as bravo,
    ):
        alpha.start_mesh(HERE)
        bravo.start_mesh(HERE)
        record = await alpha.submit("road-report", {"status": "blocked"})

        assert store.list_keys("queue/road-report/") == [f"queue/road-report/{record.id}"]
        assert [p.device_id for p in bravo.relay.discover_peers()] == ["alpha"]


class _UnreachableSession:
    def head(self, *_args: Any, **_kwargs: Any) -> Any:
        raise aiohttp.ClientConnectionError("no route to host")


class _RecordingFeed:
    instances: list[_RecordingFeed] = []

    def __init__(self, **_kwargs: Any) -> None:
        self.start_thread: int | None = None
        self.stop_thread: int | None = None
        self.is_running = False
        _RecordingFeed.instances.append(self)

    def start(self, host: str, port: int) -> None:
        self.start_thread = threading.get_ident()
        self.is_running = True

    def stop(self) -> None:
        self.stop_thread = threading.get_ident()
        self.is_running = False


@pytest.mark.asyncio
async def test_live_feed_connects_off_the_event_loop(monkeypatch: pytest.MonkeyPatch) -> None:
    _RecordingFeed.instances.clear()
    monkeypatch.setattr("pylaban.client.LiveFeedRuntime", _RecordingFeed)
    config = LabanConfig(backend_url="https://db.example", mqtt_enabled=True, mqtt_host="mqtt.example")
    loop_thread = threading.get_ident()

    async with LabanClient(
        config,
        session=_UnreachableSession(),  # type: ignore[arg-type]
        monitor=ConnectivityMonitor(initial=False),
    ):
        (feed,) = _RecordingFeed.instances
        assert feed.is_running

    assert feed.start_thread is not None and feed.start_thread != loop_thread
    assert feed.stop_thread is not None and feed.stop_thread != loop_thread
