from __future__ import annotations

import asyncio

import pytest

from pylaban._scheduler import Scheduler, TickHandle


@pytest.mark.asyncio
async def test_ticker_fires_until_cancelled() -> None:
    scheduler = Scheduler()
    ticks: list[int] = []

    handle = scheduler.every("count", 0.01, lambda: ticks.append(1), immediate=True)
    await asyncio.sleep(0.06)
    scheduler.cancel("count")
    seen = len(ticks)
    await asyncio.sleep(0.03)

    assert seen >= 2
    assert len(ticks) == seen
    assert handle.cancelled
    assert not scheduler.is_active("count")


@pytest.mark.asyncio
async def test_starting_an_active_name_reuses_the_handle() -> None:
    scheduler = Scheduler()
    first = scheduler.every("probe", 10, lambda: None)
    second = scheduler.every("probe", 10, lambda: None)

    assert first is second
    assert scheduler.active == ["probe"]
    scheduler.cancel_all()
    assert scheduler.active == []


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped() -> None:
    release = asyncio.Event()
    runs: list[int] = []

    async def slow() -> None:
        runs.append(1)
        await release.wait()

    handle = TickHandle("slow", 1.0, slow)
    handle.fire()
    await asyncio.sleep(0)
    handle.fire()

    assert handle.busy
    assert handle.skipped == 1

    release.set()
    await handle.drain()

    assert not handle.busy
    assert runs == [1]
    handle.fire()
    await handle.drain()
    assert runs == [1, 1]


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_activity() -> None:
    calls: list[int] = []

    def flaky() -> None:
        calls.append(1)
        raise RuntimeError("boom")

    handle = TickHandle("flaky", 1.0, flaky)
    handle.fire()
    handle.fire()

    assert handle.fired == 2
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_cancelled_handle_never_fires() -> None:
    calls: list[int] = []
    handle = TickHandle("x", 1.0, lambda: calls.append(1))
    handle.cancel()
    handle.cancel()
    handle.fire()

    assert calls == []


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        TickHandle("bad", 0, lambda: None)
