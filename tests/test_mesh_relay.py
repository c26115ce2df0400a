from __future__ import annotations

import asyncio
import json
import time

import pytest

from pylaban._scheduler import Scheduler
from pylaban.config import MeshProfile
from pylaban.mesh import LocalMeshRelay, presence_key, push_key, request_key
from pylaban.models.mesh import SharedRecord
from pylaban.storage import MemoryStore

from conftest import FakeClock

HERE = {"latitude": 14.5995, "longitude": 120.9842}
NEXT_DOOR = {"latitude": 14.6000, "longitude": 120.9842}  # ~56 m north
ACROSS_TOWN = {"latitude": 14.6100, "longitude": 120.9842}  # ~1.2 km north


def _record(record_id: str, lat: float = 14.5996, lon: float = 120.9843, **extra: object) -> dict[str, object]:
    return {"id": record_id, "message": f"help {record_id}", "latitude": lat, "longitude": lon, **extra}


def _pair(clock: FakeClock, medium: MemoryStore, **profile: object) -> tuple[LocalMeshRelay, LocalMeshRelay]:
    mesh = MeshProfile(**profile)  # type: ignore[arg-type]
    alpha = LocalMeshRelay(medium, device_id="alpha", profile=mesh, clock=clock)
    bravo = LocalMeshRelay(medium, device_id="bravo", profile=mesh, clock=clock)
    return alpha, bravo


@pytest.mark.asyncio
async def test_devices_in_range_discover_each_other(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)

    alpha_peers = alpha.discover_peers()
    bravo_peers = bravo.discover_peers()

    assert [p.device_id for p in alpha_peers] == ["bravo"]
    assert [p.device_id for p in bravo_peers] == ["alpha"]
    assert alpha_peers[0].distance_m == pytest.approx(55.6, abs=1)
    assert medium.get(request_key("alpha", "bravo")) is not None
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_device_out_of_range_is_not_a_peer(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    bravo.start(ACROSS_TOWN)

    assert alpha.discover_peers() == []
    assert alpha.peers == []
    assert medium.list_keys("mesh/alpha/request/") == []
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_only_net_new_nearby_records_are_delivered(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    delivered: list[list[SharedRecord]] = []
    bravo.add_listener(delivered.append)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)

    for record_id in ("r1", "r2", "r3"):
        alpha.store_local_request(_record(record_id))
    alpha.store_local_request(_record("far", lat=14.65))
    bravo.store_local_request(_record("r2"))

    bravo.discover_peers()
    alpha.poll_incoming()
    assert medium.get(request_key("bravo", "alpha")) is None

    received = bravo.poll_incoming()

    assert sorted(r.id for r in received) == ["r1", "r3"]
    assert len(delivered) == 1
    assert sorted(r.id for r in delivered[0]) == ["r1", "r3"]
    assert all(r.device_id == "alpha" for r in received)
    assert bravo.poll_incoming() == []
    assert sorted(r.id for r in bravo.received_records()) == ["r1", "r3"]
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_request_is_answered_even_before_any_push(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    alpha.store_local_request(_record("r1"))
    medium.delete(push_key("alpha"))
    bravo.start(NEXT_DOOR)

    bravo.discover_peers()
    alpha.poll_incoming()

    assert medium.get(push_key("alpha")) is not None
    assert [r.id for r in bravo.poll_incoming()] == ["r1"]
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_stop_and_restart(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    assert bravo.discover_peers() != []

    alpha.stop()
    alpha.stop()

    assert not alpha.is_running
    assert alpha.peers == []
    assert medium.get(presence_key("alpha")) is None
    assert alpha.discover_peers() == []
    assert alpha.poll_incoming() == []
    assert bravo.discover_peers() == []

    alpha.start(HERE)
    assert alpha.is_running
    assert [p.device_id for p in bravo.discover_peers()] == ["alpha"]
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_expired_presence_is_ignored_and_removed(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)

    clock.advance(30)

    assert alpha.discover_peers() == []
    assert medium.get(presence_key("bravo")) is None
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_malformed_entries_are_skipped(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    medium.put(presence_key("ghost"), "{not json")
    foreign = {
        "protocol": "other-mesh/9",
        "kind": "data_push",
        "fromDevice": "stranger",
        "sentAt": clock.now,
        "ttl": 30,
        "payload": {"records": [_record("x")]},
    }
    medium.put(push_key("stranger"), json.dumps(foreign))
    medium.put("mesh/odd-key", "{}")
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    alpha.store_local_request(_record("r1"))

    assert [p.device_id for p in bravo.discover_peers()] == ["alpha"]
    assert [r.id for r in bravo.poll_incoming()] == ["r1"]
    assert medium.get(presence_key("ghost")) == "{not json"
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_records_without_location_are_not_delivered(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    alpha.store_local_request(_record("ok"))
    alpha.store_local_request(_record("no-location", lat=None, lon=None))  # type: ignore[arg-type]

    assert [r.id for r in bravo.poll_incoming()] == ["ok"]
    alpha.stop()
    bravo.stop()


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium)
    delivered: list[str] = []

    def broken(_records: list[SharedRecord]) -> None:
        raise RuntimeError("boom")

    bravo.add_listener(broken)
    bravo.add_listener(lambda records: delivered.extend(r.id for r in records))
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    alpha.store_local_request(_record("r1"))

    bravo.poll_incoming()

    assert delivered == ["r1"]
    alpha.stop()
    bravo.stop()


def test_local_records_are_bounded(clock: FakeClock) -> None:
    relay = LocalMeshRelay(MemoryStore(), device_id="alpha", profile=MeshProfile(max_local_records=2), clock=clock)

    for record_id in ("a", "b", "c"):
        relay.store_local_request(_record(record_id))

    assert [r.id for r in relay.local_records()] == ["b", "c"]


def test_store_local_request_fills_defaults(clock: FakeClock) -> None:
    relay = LocalMeshRelay(MemoryStore(), device_id="alpha", clock=clock)

    record = relay.store_local_request({"message": "trapped", "latitude": 14.6, "longitude": 121.0, "extra": 1})

    assert record.id == str(int(clock.now * 1000))
    assert record.device_id == "alpha"
    assert record.created_at is not None
    assert "extra" not in record.to_wire()


def test_generated_device_id() -> None:
    relay = LocalMeshRelay(MemoryStore())

    assert relay.device_id.startswith("device_")
    assert len(relay.device_id) == len("device_") + 9
    assert not relay.is_running


def test_device_id_cannot_contain_separator() -> None:
    with pytest.raises(ValueError):
        LocalMeshRelay(MemoryStore(), device_id="a/b")


def test_start_without_event_loop_leaves_relay_stopped(clock: FakeClock) -> None:
    scheduler = Scheduler()
    relay = LocalMeshRelay(MemoryStore(), device_id="alpha", scheduler=scheduler, clock=clock)

    with pytest.raises(RuntimeError):
        relay.start(HERE)

    assert not relay.is_running
    assert scheduler.active == []


@pytest.mark.asyncio
async def test_start_can_be_retried_once_a_loop_is_running(clock: FakeClock) -> None:
    medium = MemoryStore()
    relay = LocalMeshRelay(medium, device_id="alpha", clock=clock)

    def start_without_loop() -> None:
        with pytest.raises(RuntimeError):
            relay.start(HERE)

    await asyncio.get_running_loop().run_in_executor(None, start_without_loop)
    assert not relay.is_running

    relay.start(HERE)
    assert relay.is_running
    assert medium.get(presence_key("alpha")) is not None
    relay.stop()


@pytest.mark.asyncio
async def test_activities_follow_lifecycle(clock: FakeClock) -> None:
    scheduler = Scheduler()
    relay = LocalMeshRelay(MemoryStore(), device_id="alpha", scheduler=scheduler, clock=clock)
    activities = ["mesh-presence", "mesh-discovery", "mesh-poll"]

    relay.start(HERE)
    assert sorted(scheduler.active) == sorted(activities)
    handles = [scheduler.get(name) for name in activities]

    relay.start(NEXT_DOOR)
    assert sorted(scheduler.active) == sorted(activities)
    assert [scheduler.get(name) for name in activities] == handles

    relay.stop()
    assert scheduler.active == []
    assert all(handle is not None and handle.cancelled for handle in handles)

    relay.start(HERE)
    assert sorted(scheduler.active) == sorted(activities)
    relay.stop()
    assert scheduler.active == []


@pytest.mark.asyncio
async def test_running_relays_discover_each_other_on_their_own() -> None:
    medium = MemoryStore()
    mesh = MeshProfile(presence_interval=0.05, discovery_interval=0.05, poll_interval=0.05)
    alpha = LocalMeshRelay(medium, device_id="alpha", profile=mesh, clock=time.time)
    bravo = LocalMeshRelay(medium, device_id="bravo", profile=mesh, clock=time.time)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    alpha.store_local_request(_record("r1"))

    try:
        deadline = time.monotonic() + 6
        while time.monotonic() < deadline:
            if alpha.peers and bravo.peers and bravo.received_records():
                break
            await asyncio.sleep(0.05)

        assert [p.device_id for p in alpha.peers] == ["bravo"]
        assert [p.device_id for p in bravo.peers] == ["alpha"]
        assert [r.id for r in bravo.received_records()] == ["r1"]
    finally:
        alpha.stop()
        bravo.stop()


@pytest.mark.asyncio
async def test_received_records_are_bounded(clock: FakeClock) -> None:
    medium = MemoryStore()
    alpha, bravo = _pair(clock, medium, max_received_records=2)
    delivered: list[list[SharedRecord]] = []
    bravo.add_listener(delivered.append)
    alpha.start(HERE)
    bravo.start(NEXT_DOOR)
    for record_id in ("r1", "r2", "r3"):
        alpha.store_local_request(_record(record_id))

    bravo.discover_peers()
    alpha.poll_incoming()
    bravo.poll_incoming()

    assert [r.id for r in delivered[0]] == ["r1", "r2", "r3"]
    assert [r.id for r in bravo.received_records()] == ["r2", "r3"]
    alpha.stop()
    bravo.stop()
