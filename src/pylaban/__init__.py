"""pylaban - Offline-first sync and local mesh relay for disaster coordination."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pylaban")
except PackageNotFoundError:
    __version__ = "0+local"
from pylaban.cache import TTLCache
from pylaban.client import LabanClient
from pylaban.config import LabanConfig, MeshProfile
from pylaban.connectivity import ConnectivityMonitor, HttpProbe
from pylaban.coordinator import SyncCoordinator
from pylaban.exceptions import (
    LabanConfigError,
    LabanError,
    MeshEnvelopeParseError,
    OfflineNoDataError,
    PersistenceError,
    TransientRemoteError,
)
from pylaban.geo import distance_m
from pylaban.mesh import LocalMeshRelay
from pylaban.models import (
    ConnectionStatus,
    EntitySyncResult,
    FilterSpec,
    Location,
    MeshPeer,
    PendingRecord,
    QueryResult,
    QuerySource,
    SharedRecord,
    SubmittedRecord,
    SyncEvent,
    SyncReport,
)
from pylaban.pending import PendingQueue
from pylaban.storage import FileStore, KeyValueStore, MemoryStore

__all__ = [
    "__version__",
    "ConnectionStatus",
    "ConnectivityMonitor",
    "EntitySyncResult",
    "FileStore",
    "FilterSpec",
    "HttpProbe",
    "KeyValueStore",
    "LabanClient",
    "LabanConfig",
    "LabanConfigError",
    "LabanError",
    "LocalMeshRelay",
    "Location",
    "MemoryStore",
    "MeshEnvelopeParseError",
    "MeshPeer",
    "MeshProfile",
    "OfflineNoDataError",
    "PendingQueue",
    "PendingRecord",
    "PersistenceError",
    "QueryResult",
    "QuerySource",
    "SharedRecord",
    "SubmittedRecord",
    "SyncCoordinator",
    "SyncEvent",
    "SyncReport",
    "TTLCache",
    "TransientRemoteError",
    "distance_m",
]
