"""Online/offline detection.

:class:`ConnectivityMonitor` holds the current state and fans every signal
out to subscribers. The underlying signal may re-fire without a state
change, and subscribers are invoked on every fire; consumers compare the
previous and current state before emitting domain-level events.

:class:`HttpProbe` is one concrete signal source: it periodically probes a
URL with aiohttp and feeds the outcome into a monitor.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import aiohttp

from pylaban._scheduler import Scheduler

_logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityMonitor:
    def __init__(self, *, initial: bool = True) -> None:
        self._online = initial
        self._subscribers: list[ConnectivityCallback] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register *callback* and return a function that unregisters it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: ConnectivityCallback) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def notify(self, online: bool) -> None:
        """Feed one observation of the underlying signal."""
        previous = self._online
        self._online = online
        if previous != online:
            _logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._subscribers):
            try:
                callback(online)
            except Exception:
                _logger.warning("Connectivity subscriber failed", exc_info=True)

    def set_online(self) -> None:
        self.notify(True)

    def set_offline(self) -> None:
        self.notify(False)


class HttpProbe:
    """Periodic reachability probe.

    Any HTTP response below 500 counts as online; connection errors,
    timeouts and server errors count as offline.
    """

    _TICKER = "connectivity-probe"

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        session: aiohttp.ClientSession,
        url: str,
        *,
        interval: float,
        timeout: float = 5.0,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._monitor = monitor
        self._http = session
        self._url = url
        self._interval = interval
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._scheduler = scheduler or Scheduler()

    async def probe_once(self) -> bool:
        try:
            async with self._http.head(self._url, timeout=self._timeout, allow_redirects=True) as resp:
                online = resp.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError):
            _logger.debug("Connectivity probe to %s failed", self._url, exc_info=True)
            online = False
        self._monitor.notify(online)
        return online

    def start(self) -> None:
        self._scheduler.every(self._TICKER, self._interval, self.probe_once, immediate=True)

    def stop(self) -> None:
        self._scheduler.cancel(self._TICKER)

    @property
    def is_running(self) -> bool:
        return self._scheduler.is_active(self._TICKER)
