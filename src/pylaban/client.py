"""High-level async client wiring the sync layer and mesh relay for one device."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import aiohttp

from pylaban._constants import HELP_REQUEST
from pylaban._mqtt import ChangeEvent, LiveFeedRuntime
from pylaban._scheduler import Scheduler
from pylaban._transport import RestTransport
from pylaban.backend import RestBackend
from pylaban.cache import TTLCache
from pylaban.config import LabanConfig
from pylaban.connectivity import ConnectivityMonitor, HttpProbe
from pylaban.coordinator import LiveChannel, SyncCoordinator, WatchCallback
from pylaban.exceptions import LabanError
from pylaban.mesh.relay import LocalMeshRelay
from pylaban.models.mesh import Location
from pylaban.models.query import FilterSpec, QueryResult
from pylaban.models.records import SubmittedRecord
from pylaban.models.sync import ConnectionStatus, SyncReport
from pylaban.pending import PendingQueue
from pylaban.storage import FileStore, KeyValueStore, MemoryStore

_logger = logging.getLogger(__name__)


def _open_store(directory: str | None) -> KeyValueStore:
    if directory:
        return FileStore(Path(directory).expanduser())
    return MemoryStore()


class LabanClient:
    """Async client for one device.

    Usage::

        async with LabanClient(LabanConfig.from_env()) as client:
            client.start_mesh({"latitude": 14.5995, "longitude": 120.9842})
            record = await client.submit("help-request", {"message": "trapped on roof"})
            nearby = await client.query("help-request", FilterSpec(eq={"status": "open"}))

    Provisional help-request submissions are also shared with nearby devices
    through the mesh relay while it is running, unless
    ``relay_offline_submissions`` is disabled.
    """

    def __init__(
        self,
        config: LabanConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        store: KeyValueStore | None = None,
        medium: KeyValueStore | None = None,
        monitor: ConnectivityMonitor | None = None,
        relay_offline_submissions: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._store = store if store is not None else _open_store(config.storage_dir)
        self._medium = medium if medium is not None else _open_store(config.mesh_dir)
        self._monitor = monitor if monitor is not None else ConnectivityMonitor()
        self._relay_offline = relay_offline_submissions
        self._clock = clock
        self._scheduler = Scheduler()
        self._feed: LiveFeedRuntime | None = None
        self._backend: RestBackend | None = None
        self._probe: HttpProbe | None = None
        self._coordinator: SyncCoordinator | None = None
        self._relay = LocalMeshRelay(
            self._medium,
            device_id=config.device_id,
            profile=config.mesh,
            scheduler=self._scheduler,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> LabanClient:
        loop = asyncio.get_running_loop()
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()

        if self._config.backend_url:
            transport = RestTransport(self._config, self._http_session)
            if self._config.mqtt_enabled:
                self._feed = LiveFeedRuntime(
                    loop=loop,
                    on_event=self._on_change_event,
                    keepalive=self._config.mqtt_keepalive,
                    tls=self._config.mqtt_tls,
                    logger=_logger,
                )
            self._backend = RestBackend(transport, feed=self._feed, topic_prefix=self._config.mqtt_topic_prefix)
            await self._start_feed(loop)
        else:
            _logger.info("No backend configured; running offline-only")

        self._coordinator = SyncCoordinator(
            backend=self._backend,
            monitor=self._monitor,
            queue=PendingQueue(self._store, clock=self._clock),
            cache=TTLCache(self._store, clock=self._clock),
            config=self._config,
            scheduler=self._scheduler,
        )
        self._coordinator.start()

        probe_url = self._config.effective_probe_url
        if probe_url:
            self._probe = HttpProbe(
                self._monitor,
                self._http_session,
                probe_url,
                interval=self._config.probe_interval,
                timeout=min(self._config.request_timeout, self._config.probe_interval),
                scheduler=self._scheduler,
            )
            self._probe.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self._relay.stop()
        if self._probe is not None:
            self._probe.stop()
            self._probe = None
        if self._coordinator is not None:
            await self._coordinator.close()
        self._scheduler.cancel_all()
        await self._stop_feed()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._backend = None

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def config(self) -> LabanConfig:
        return self._config

    @property
    def monitor(self) -> ConnectivityMonitor:
        return self._monitor

    @property
    def relay(self) -> LocalMeshRelay:
        return self._relay

    @property
    def coordinator(self) -> SyncCoordinator:
        if self._coordinator is None:
            raise LabanError("LabanClient is not open; use 'async with LabanClient(...)'")
        return self._coordinator

    @property
    def device_id(self) -> str:
        return self._relay.device_id

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    async def submit(self, entity_type: str, payload: dict[str, Any]) -> SubmittedRecord:
        """Submit a record; provisional help requests are also shared over the mesh."""
        record = await self.coordinator.submit(entity_type, payload)
        if record.provisional and entity_type == HELP_REQUEST and self._relay_offline and self._relay.is_running:
            self._relay.store_local_request(record.data)
        return record

    async def query(self, entity_type: str, filter_spec: FilterSpec | None = None) -> QueryResult:
        return await self.coordinator.query(entity_type, filter_spec)

    def watch(self, entity_type: str, filter_spec: FilterSpec | None, callback: WatchCallback) -> Callable[[], None]:
        return self.coordinator.watch(entity_type, filter_spec, callback)

    def channel(self, entity_type: str) -> LiveChannel:
        return self.coordinator.channel(entity_type)

    async def force_sync(self) -> SyncReport:
        return await self.coordinator.force_sync()

    def connection_status(self) -> ConnectionStatus:
        return self.coordinator.connection_status()

    # ------------------------------------------------------------------
    # Mesh
    # ------------------------------------------------------------------

    def start_mesh(self, location: Location | Mapping[str, Any]) -> None:
        self._relay.start(location)

    def stop_mesh(self) -> None:
        self._relay.stop()

    # ------------------------------------------------------------------
    # Live change feed
    # ------------------------------------------------------------------

    def _on_change_event(self, event: ChangeEvent) -> None:
        if self._backend is not None:
            self._backend.dispatch(event)

    async def _start_feed(self, loop: asyncio.AbstractEventLoop) -> None:
        """Best-effort live feed startup; without it channels stay inert.

        The broker connect blocks, so it runs in the default executor.
        """
        feed = self._feed
        host = self._config.mqtt_host
        if feed is None or not host:
            return
        try:
            await loop.run_in_executor(None, feed.start, host, self._config.mqtt_port)
        except Exception:
            _logger.warning("Live change feed startup failed", exc_info=True)

    async def _stop_feed(self) -> None:
        feed = self._feed
        self._feed = None
        if feed is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(None, feed.stop)
        except Exception:
            _logger.debug("Live change feed stop failed", exc_info=True)
