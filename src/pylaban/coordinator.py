"""Sync coordinator: the single entry point for reads, writes and live subscriptions.

Routes every call between the remote backend, the TTL cache and the pending
queue depending on connectivity, and drains the queue when the device comes
back online.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pylaban._constants import PROVISIONAL_ID_PREFIX
from pylaban._mqtt import ChangeEvent
from pylaban._scheduler import Scheduler
from pylaban.backend import RemoteBackend
from pylaban.cache import TTLCache
from pylaban.config import LabanConfig
from pylaban.connectivity import ConnectivityMonitor
from pylaban.exceptions import LabanError, PersistenceError, TransientRemoteError
from pylaban.models.query import FilterSpec, QueryResult, QuerySource
from pylaban.models.records import SubmittedRecord
from pylaban.models.sync import ConnectionStatus, EntitySyncResult, SyncEvent, SyncReport
from pylaban.pending import PendingQueue

_logger = logging.getLogger(__name__)

EventListener = Callable[[SyncEvent, SyncReport | None], None]
WatchCallback = Callable[[QueryResult], None]
ChangeCallback = Callable[[ChangeEvent], None]

_OFFLINE_REFRESH = "offline-refresh"


# ------------------------------------------------------------------
# Live subscription proxy
# ------------------------------------------------------------------


class LiveChannel:
    """Listener registry for one entity type's live changes.

    Callers register with :meth:`on`, then :meth:`subscribe` /
    :meth:`unsubscribe`. The concrete channel decides whether changes come
    from the backend or never arrive, so callers need no online/offline
    branching.
    """

    def __init__(self, entity_type: str, table: str) -> None:
        self.entity_type = entity_type
        self.table = table
        self._listeners: list[tuple[str, ChangeCallback]] = []

    def on(self, event_filter: str, callback: ChangeCallback) -> LiveChannel:
        self._listeners.append((event_filter, callback))
        return self

    def subscribe(self) -> LiveChannel:
        return self

    def unsubscribe(self) -> None:
        return None

    @property
    def is_live(self) -> bool:
        return False

    def _fan_out(self, event: ChangeEvent) -> None:
        for event_filter, callback in list(self._listeners):
            if not event.matches(event_filter):
                continue
            try:
                callback(event)
            except Exception:
                _logger.warning("Listener on %s channel failed", self.entity_type, exc_info=True)


class RemoteChannel(LiveChannel):
    """Forwards the backend's live-change subscription to registered listeners."""

    def __init__(self, entity_type: str, table: str, backend: RemoteBackend) -> None:
        super().__init__(entity_type, table)
        self._backend = backend
        self._handle: Any = None

    def subscribe(self) -> LiveChannel:
        if self._handle is not None:
            return self
        try:
            self._handle = self._backend.subscribe(self.table, "*", self._fan_out)
        except TransientRemoteError:
            _logger.warning("Live subscription to %s unavailable; channel stays silent", self.table, exc_info=True)
        return self

    def unsubscribe(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            self._backend.unsubscribe(handle)

    @property
    def is_live(self) -> bool:
        return self._handle is not None


class OfflineChannel(LiveChannel):
    """No-op stand-in used while offline."""

    def subscribe(self) -> LiveChannel:
        _logger.debug("Offline mode - skipping live subscription for %s", self.entity_type)
        return self


# ------------------------------------------------------------------
# Coordinator
# ------------------------------------------------------------------


class SyncCoordinator:
    """Offline-first access to the remote backend.

    Usage::

        coordinator = SyncCoordinator(backend=backend, monitor=monitor, queue=queue, cache=cache)
        coordinator.start()
        record = await coordinator.submit("help-request", {"message": "flood"})
        result = await coordinator.query("help-request", FilterSpec(eq={"status": "open"}))
    """

    def __init__(
        self,
        *,
        backend: RemoteBackend | None,
        monitor: ConnectivityMonitor,
        queue: PendingQueue,
        cache: TTLCache,
        config: LabanConfig | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._backend = backend
        self._monitor = monitor
        self._queue = queue
        self._cache = cache
        self._config = config or LabanConfig()
        self._scheduler = scheduler or Scheduler()
        self._online = monitor.is_online()
        self._unsubscribe_monitor: Callable[[], None] | None = None
        self._drain_lock = asyncio.Lock()
        self._confirmed: dict[str, str] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._event_listeners: list[EventListener] = []
        self._watches: dict[int, tuple[str, FilterSpec, WatchCallback]] = {}
        self._next_watch = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin tracking connectivity. Call from within the running event loop."""
        if self._unsubscribe_monitor is not None:
            return
        self._online = self._monitor.is_online()
        self._unsubscribe_monitor = self._monitor.subscribe(self._on_connectivity)
        if not self._online:
            self._start_offline_refresh()

    async def close(self) -> None:
        if self._unsubscribe_monitor is not None:
            self._unsubscribe_monitor()
            self._unsubscribe_monitor = None
        self._stop_offline_refresh()
        await self.wait_idle()

    async def wait_idle(self) -> None:
        """Wait for background reconnect handling to finish."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def is_online(self) -> bool:
        return self._backend is not None and self._monitor.is_online()

    def connection_status(self) -> ConnectionStatus:
        return ConnectionStatus(online=self._monitor.is_online(), backend_available=self._backend is not None)

    @property
    def offline_refresh_active(self) -> bool:
        return self._scheduler.is_active(_OFFLINE_REFRESH)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit(self, entity_type: str, payload: dict[str, Any]) -> SubmittedRecord:
        """Write a record, falling back to the pending queue.

        Online, the remote insert is awaited so that a failure can still
        take the offline path within this call. A
        :class:`~pylaban.exceptions.PersistenceError` from the queue is
        raised to the caller.
        """
        backend = self._backend
        if backend is not None and self._monitor.is_online():
            table = self._config.table_for(entity_type)
            try:
                confirmed = await backend.insert(table, [dict(payload)])
            except TransientRemoteError as exc:
                _logger.warning("Remote insert into %s failed, queueing offline: %s", table, exc)
            else:
                remote_id = str(confirmed["id"])
                self._cache_record(entity_type, remote_id, confirmed)
                return SubmittedRecord(id=remote_id, entity_type=entity_type, data=confirmed)

        pending = self._queue.enqueue(entity_type, payload)
        _logger.info("Stored %s %s offline", entity_type, pending.id)
        return SubmittedRecord(
            id=pending.id,
            entity_type=entity_type,
            data={**pending.payload, "id": pending.id, "offline": True},
            provisional=True,
        )

    def _cache_record(self, entity_type: str, record_id: str, record: dict[str, Any]) -> None:
        try:
            self._cache.put(f"{entity_type}:record:{record_id}", record, self._config.cache_ttl)
        except PersistenceError:
            _logger.warning("Could not cache confirmed %s %s", entity_type, record_id, exc_info=True)

    def resolve_id(self, record_id: str) -> str | None:
        """Map a provisional id to its server id once synced.

        Server ids resolve to themselves. ``None`` means the record is still
        pending or unknown.
        """
        if record_id in self._confirmed:
            return self._confirmed[record_id]
        record = self._queue.find(record_id)
        if record is None:
            return None if self._is_provisional(record_id) else record_id
        return record.remote_id

    @staticmethod
    def _is_provisional(record_id: str) -> bool:
        return record_id.startswith(PROVISIONAL_ID_PREFIX)

    def pending_count(self, entity_type: str | None = None) -> int:
        return self._queue.pending_count(entity_type)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        entity_type: str,
        filter_spec: FilterSpec | None = None,
        *,
        ttl: float | None = None,
    ) -> QueryResult:
        """Read rows, serving the cache when the backend is unreachable.

        A ``QuerySource.UNAVAILABLE`` result means offline with nothing
        cached, which is different from an empty remote result.
        """
        spec = filter_spec or FilterSpec()
        key = spec.cache_key(entity_type)
        backend = self._backend

        if backend is not None and self._monitor.is_online():
            table = self._config.table_for(entity_type)
            try:
                rows = await backend.select(table, spec)
            except TransientRemoteError as exc:
                _logger.warning("Remote select from %s failed, trying cache: %s", table, exc)
            else:
                stored_at: float | None = None
                try:
                    stored_at = self._cache.put(key, rows, self._config.cache_ttl if ttl is None else ttl).stored_at
                except PersistenceError:
                    _logger.warning("Could not cache %s rows for offline use", entity_type, exc_info=True)
                return QueryResult(
                    entity_type=entity_type,
                    source=QuerySource.REMOTE,
                    data=rows,
                    stored_at=stored_at,
                )

        entry = self._cache.lookup(key)
        if entry is None:
            _logger.debug("No cached data for %s", key)
            return QueryResult(entity_type=entity_type, source=QuerySource.UNAVAILABLE)
        _logger.debug("Returning cached data for %s", entity_type)
        return QueryResult(
            entity_type=entity_type,
            source=QuerySource.CACHE,
            data=list(entry.payload or []),
            stored_at=entry.stored_at,
        )

    def watch(self, entity_type: str, filter_spec: FilterSpec | None, callback: WatchCallback) -> Callable[[], None]:
        """Register a query that is re-served from cache on every offline refresh tick.

        Returns a function that removes the watch.
        """
        self._next_watch += 1
        watch_id = self._next_watch
        self._watches[watch_id] = (entity_type, filter_spec or FilterSpec(), callback)

        def _unwatch() -> None:
            self._watches.pop(watch_id, None)

        return _unwatch

    async def refresh_offline(self) -> int:
        """Re-serve cached data to watchers. Returns how many watchers got data."""
        if self._monitor.is_online():
            return 0
        self._cache.prune()
        served = 0
        for entity_type, spec, callback in list(self._watches.values()):
            result = await self.query(entity_type, spec)
            if not result.available:
                continue
            try:
                callback(result)
            except Exception:
                _logger.warning("Offline refresh callback for %s failed", entity_type, exc_info=True)
                continue
            served += 1
        return served

    def _start_offline_refresh(self) -> None:
        try:
            self._scheduler.every(_OFFLINE_REFRESH, self._config.offline_refresh_interval, self.refresh_offline)
        except RuntimeError:
            _logger.debug("No running event loop; offline refresh not scheduled")

    def _stop_offline_refresh(self) -> None:
        self._scheduler.cancel(_OFFLINE_REFRESH)

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------

    def channel(self, entity_type: str) -> LiveChannel:
        """Live-change channel for *entity_type*.

        Online this wraps the backend subscription; offline it is a no-op
        stub with the same interface.
        """
        table = self._config.table_for(entity_type)
        if self._backend is not None and self._monitor.is_online():
            return RemoteChannel(entity_type, table, self._backend)
        return OfflineChannel(entity_type, table)

    # ------------------------------------------------------------------
    # Reconnect / drain
    # ------------------------------------------------------------------

    def _on_connectivity(self, online: bool) -> None:
        previous = self._online
        self._online = online
        if previous == online:
            return
        if online:
            _logger.info("Connection restored - draining pending writes")
            self._stop_offline_refresh()
            self._spawn(self._handle_reconnect())
        else:
            _logger.info("Connection lost - switching to offline mode")
            self._emit(SyncEvent.CONNECTION_LOST, None)
            self._start_offline_refresh()

    def _spawn(self, coro: Awaitable[Any]) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            _logger.warning("No running event loop; call on_reconnect() to drain pending writes")
            if asyncio.iscoroutine(coro):
                coro.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_reconnect(self) -> None:
        try:
            report = await self.on_reconnect()
        except LabanError as exc:
            _logger.warning("Reconnect drain aborted", exc_info=True)
            report = SyncReport(success=False, reason=f"error: {exc}")
        self._emit(SyncEvent.CONNECTION_RESTORED, report)
        if report.synced > 0:
            _logger.info("Synced %d pending records", report.synced)
            self._emit(SyncEvent.SYNC_COMPLETE, report)

    async def on_reconnect(self) -> SyncReport:
        """Drain every entity type's queue, oldest record first."""
        if self._backend is None:
            return SyncReport(success=False, reason="no-backend")
        async with self._drain_lock:
            results: dict[str, EntitySyncResult] = {}
            for entity_type in self._queue.entity_types():
                results[entity_type] = await self.drain(entity_type)
            return SyncReport(success=all(r.failed == 0 for r in results.values()), results=results)

    async def drain(self, entity_type: str) -> EntitySyncResult:
        """Submit queued records of one type in order, stopping at the first failure.

        A record whose insert was confirmed but could not be marked synced is
        remembered, so the next drain retries the bookkeeping instead of
        inserting it a second time.
        """
        backend = self._backend
        pending = self._queue.list_unsynced(entity_type)
        if backend is None or not pending:
            return EntitySyncResult(entity_type=entity_type, remaining=len(pending))

        table = self._config.table_for(entity_type)
        synced = 0
        id_map: dict[str, str] = {}
        for index, record in enumerate(pending):
            remote_id = self._confirmed.get(record.id)
            if remote_id is None:
                try:
                    confirmed = await backend.insert(table, [record.payload])
                except TransientRemoteError as exc:
                    _logger.warning(
                        "Failed to sync %s %s, deferring %d record(s): %s",
                        entity_type,
                        record.id,
                        len(pending) - index,
                        exc,
                    )
                    return EntitySyncResult(
                        entity_type=entity_type,
                        synced=synced,
                        failed=1,
                        remaining=len(pending) - index,
                        id_map=id_map,
                        error=str(exc),
                    )
                remote_id = str(confirmed["id"])
                self._confirmed[record.id] = remote_id
                self._cache_record(entity_type, remote_id, confirmed)
            id_map[record.id] = remote_id
            try:
                self._queue.mark_synced(entity_type, record.id, remote_id=remote_id)
            except PersistenceError as exc:
                _logger.warning("Could not mark %s %s as synced", entity_type, record.id, exc_info=True)
                return EntitySyncResult(
                    entity_type=entity_type,
                    synced=synced,
                    failed=1,
                    remaining=len(pending) - index,
                    id_map=id_map,
                    error=str(exc),
                )
            self._confirmed.pop(record.id, None)
            synced += 1
            _logger.debug("Synced %s %s -> %s", entity_type, record.id, remote_id)
        return EntitySyncResult(entity_type=entity_type, synced=synced, id_map=id_map)

    async def force_sync(self) -> SyncReport:
        if not self.is_online():
            return SyncReport(success=False, reason="offline")
        report = await self.on_reconnect()
        if report.synced > 0:
            self._emit(SyncEvent.SYNC_COMPLETE, report)
        return report

    def clear_offline_data(self) -> None:
        """Drop every queued write and cached read (testing/debugging)."""
        self._queue.clear()
        self._cache.clear()
        self._confirmed.clear()
        _logger.info("All offline data cleared")

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        try:
            self._event_listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, event: SyncEvent, report: SyncReport | None) -> None:
        for listener in list(self._event_listeners):
            try:
                listener(event, report)
            except Exception:
                _logger.warning("Sync event listener failed for %s", event, exc_info=True)
