"""Local queue and cache records."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from pylaban.models._base import LabanBaseModel


class PendingRecord(LabanBaseModel):
    """A write waiting for remote submission.

    ``synced`` only ever moves from ``False`` to ``True``. Once synced the
    record keeps its ``remote_id`` so a provisional id can still be resolved.
    """

    id: str
    entity_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float
    sequence: int = 0
    synced: bool = False
    synced_at: float | None = None
    remote_id: str | None = None

    @property
    def order_key(self) -> tuple[float, int]:
        return (self.created_at, self.sequence)


class CacheEntry(LabanBaseModel):
    key: str
    payload: Any = None
    stored_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SubmittedRecord(LabanBaseModel):
    """Result of ``SyncCoordinator.submit``.

    Parameters
    ----------
    id : str
        Server-assigned id, or the provisional id when ``provisional``.
    entity_type : str
        Entity type the record was submitted under.
    data : dict
        The confirmed server record, or the submitted payload when
        provisional.
    provisional : bool
        ``True`` when the write was queued locally instead of confirmed.
    """

    id: str
    entity_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    provisional: bool = False

    @property
    def offline(self) -> bool:
        return self.provisional
