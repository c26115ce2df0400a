"""Sync reports and connectivity events."""

from __future__ import annotations

from enum import StrEnum

from pydantic import Field

from pylaban.models._base import LabanBaseModel


class SyncEvent(StrEnum):
    CONNECTION_LOST = "connection-lost"
    CONNECTION_RESTORED = "connection-restored"
    SYNC_COMPLETE = "sync-complete"


class EntitySyncResult(LabanBaseModel):
    """Drain outcome for one entity type.

    ``id_map`` maps provisional ids to the ids the backend assigned.
    ``error`` describes what stopped the drain when ``failed`` is set.
    """

    entity_type: str
    synced: int = 0
    failed: int = 0
    remaining: int = 0
    id_map: dict[str, str] = Field(default_factory=dict)
    error: str | None = None


class SyncReport(LabanBaseModel):
    success: bool = True
    reason: str | None = None
    results: dict[str, EntitySyncResult] = Field(default_factory=dict)

    @property
    def synced(self) -> int:
        return sum(result.synced for result in self.results.values())

    @property
    def failed(self) -> int:
        return sum(result.failed for result in self.results.values())


class ConnectionStatus(LabanBaseModel):
    online: bool
    backend_available: bool
