"""Periodic activities on the asyncio loop.

Each activity runs on its own ticker. A ``TickHandle`` is the cancellation
token for one ticker: cancelling it stops future ticks immediately, while a
tick that is already in flight is allowed to finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

_logger = logging.getLogger(__name__)

TickCallback = Callable[[], Any]


class TickHandle:
    """Cancellation token and bookkeeping for one periodic activity."""

    def __init__(self, name: str, interval: float, callback: TickCallback) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._cancelled = False
        self._busy = False
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self.fired = 0
        self.skipped = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def busy(self) -> bool:
        """Whether a previous tick is still running."""
        return self._busy

    def cancel(self) -> None:
        """Stop future ticks. Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        task = self._loop_task
        self._loop_task = None
        if task is not None and not task.done():
            task.cancel()

    def fire(self) -> None:
        """Run one tick now unless cancelled or the previous tick is still running."""
        if self._cancelled:
            return
        if self._busy:
            self.skipped += 1
            _logger.debug("Skipping tick of %s: previous tick still running", self.name)
            return
        self.fired += 1
        try:
            result = self._callback()
        except Exception:
            _logger.warning("Periodic activity %s failed", self.name, exc_info=True)
            return
        if inspect.isawaitable(result):
            self._busy = True
            task = asyncio.ensure_future(self._finish(result))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _finish(self, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception:
            _logger.warning("Periodic activity %s failed", self.name, exc_info=True)
        finally:
            self._busy = False

    async def _run(self, immediate: bool) -> None:
        if immediate:
            self.fire()
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            self.fire()

    async def drain(self) -> None:
        """Wait for ticks already in flight (mostly useful in tests and shutdown)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


class Scheduler:
    """Owns the tickers of one component."""

    def __init__(self) -> None:
        self._handles: dict[str, TickHandle] = {}

    def every(self, name: str, interval: float, callback: TickCallback, *, immediate: bool = False) -> TickHandle:
        """Start a ticker. Must be called with a running event loop.

        Starting a name that is already active returns the existing handle
        rather than spawning a second timer.
        """
        existing = self._handles.get(name)
        if existing is not None and not existing.cancelled:
            return existing
        loop = asyncio.get_running_loop()
        handle = TickHandle(name, interval, callback)
        handle._loop_task = loop.create_task(handle._run(immediate), name=f"tick:{name}")
        self._handles[name] = handle
        _logger.debug("Started ticker %s every %.2fs", name, interval)
        return handle

    def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()
            _logger.debug("Cancelled ticker %s", name)

    def cancel_all(self) -> None:
        for name in list(self._handles):
            self.cancel(name)

    def get(self, name: str) -> TickHandle | None:
        return self._handles.get(name)

    def is_active(self, name: str) -> bool:
        handle = self._handles.get(name)
        return handle is not None and not handle.cancelled

    @property
    def active(self) -> list[str]:
        return [name for name, handle in self._handles.items() if not handle.cancelled]
