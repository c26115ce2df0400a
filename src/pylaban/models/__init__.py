"""Data models for pylaban."""

from pylaban.models._base import LabanBaseModel
from pylaban.models.mesh import (
    EnvelopeKind,
    Location,
    MeshPeer,
    Presence,
    RelayEnvelope,
    SharedRecord,
)
from pylaban.models.query import FilterSpec, QueryResult, QuerySource
from pylaban.models.records import CacheEntry, PendingRecord, SubmittedRecord
from pylaban.models.sync import ConnectionStatus, EntitySyncResult, SyncEvent, SyncReport

__all__ = [
    "CacheEntry",
    "ConnectionStatus",
    "EntitySyncResult",
    "EnvelopeKind",
    "FilterSpec",
    "LabanBaseModel",
    "Location",
    "MeshPeer",
    "PendingRecord",
    "Presence",
    "QueryResult",
    "QuerySource",
    "RelayEnvelope",
    "SharedRecord",
    "SubmittedRecord",
    "SyncEvent",
    "SyncReport",
]
