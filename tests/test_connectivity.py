from __future__ import annotations

from typing import Any

import aiohttp
import pytest

from pylaban.connectivity import ConnectivityMonitor, HttpProbe


def test_subscribers_see_every_signal() -> None:
    monitor = ConnectivityMonitor(initial=True)
    seen: list[bool] = []
    monitor.subscribe(seen.append)

    monitor.set_online()
    monitor.set_offline()
    monitor.set_offline()

    assert seen == [True, False, False]
    assert monitor.is_online() is False


def test_failing_subscriber_is_isolated() -> None:
    monitor = ConnectivityMonitor()
    seen: list[bool] = []

    def broken(_online: bool) -> None:
        raise RuntimeError("boom")

    monitor.subscribe(broken)
    monitor.subscribe(seen.append)
    monitor.set_offline()

    assert seen == [False]


def test_unsubscribe_function() -> None:
    monitor = ConnectivityMonitor()
    seen: list[bool] = []
    unsubscribe = monitor.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    monitor.set_offline()

    assert seen == []


class _FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    async def __aenter__(self) -> _FakeResponse:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None


class _FakeSession:
    def __init__(self, status: int | None = None, error: Exception | None = None) -> None:
        self._status = status
        self._error = error
        self.urls: list[str] = []

    def head(self, url: str, **_kwargs: Any) -> _FakeResponse:
        self.urls.append(url)
        if self._error is not None:
            raise self._error
        assert self._status is not None
        return _FakeResponse(self._status)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("session", "expected"),
    [
        (_FakeSession(status=200), True),
        (_FakeSession(status=404), True),
        (_FakeSession(status=503), False),
        (_FakeSession(error=aiohttp.ClientConnectionError("down")), False),
        (_FakeSession(error=TimeoutError()), False),
    ],
)
async def test_probe_maps_responses(session: _FakeSession, expected: bool) -> None:
    monitor = ConnectivityMonitor(initial=not expected)
    probe = HttpProbe(monitor, session, "https://backend.example", interval=15)  # type: ignore[arg-type]

    assert await probe.probe_once() is expected
    assert monitor.is_online() is expected
    assert session.urls == ["https://backend.example"]


@pytest.mark.asyncio
async def test_probe_start_stop() -> None:
    session = _FakeSession(status=200)
    probe = HttpProbe(ConnectivityMonitor(), session, "https://x", interval=60)  # type: ignore[arg-type]

    probe.start()
    assert probe.is_running
    probe.stop()
    assert not probe.is_running
