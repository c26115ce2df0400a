"""Durable per-entity-type queue of writes awaiting remote submission."""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from pylaban._constants import PROVISIONAL_ID_PREFIX, QUEUE_PREFIX
from pylaban.models.records import PendingRecord
from pylaban.storage import KeyValueStore

_logger = logging.getLogger(__name__)


def new_provisional_id(now: float) -> str:
    """Locally generated id, e.g. ``offline-1718000000000-3f9a1c2b``."""
    return f"{PROVISIONAL_ID_PREFIX}{int(now * 1000)}-{secrets.token_hex(4)}"


class PendingQueue:
    """Pending writes keyed by entity type (``"help-request"``, ``"road-report"``...).

    Persistence failures from the underlying store propagate as
    :class:`~pylaban.exceptions.PersistenceError`; nothing is dropped silently.
    """

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def _prefix(entity_type: str) -> str:
        return f"{QUEUE_PREFIX}{entity_type}/"

    def _key(self, entity_type: str, record_id: str) -> str:
        return self._prefix(entity_type) + record_id

    def _load(self, store_key: str) -> PendingRecord | None:
        raw = self._store.get(store_key)
        if raw is None:
            return None
        try:
            return PendingRecord.model_validate_json(raw)
        except ValidationError:
            _logger.warning("Skipping unreadable queue entry %s", store_key, exc_info=True)
            return None

    def _records(self, entity_type: str) -> list[PendingRecord]:
        records = [
            record
            for key in self._store.list_keys(self._prefix(entity_type))
            if (record := self._load(key)) is not None
        ]
        records.sort(key=lambda record: record.order_key)
        return records

    def enqueue(self, entity_type: str, payload: dict[str, Any], *, record_id: str | None = None) -> PendingRecord:
        """Persist *payload* as an unsynced record and return it.

        The record id doubles as the provisional id handed back to callers.
        """
        now = self._clock()
        existing = self._records(entity_type)
        sequence = existing[-1].sequence + 1 if existing else 0
        record = PendingRecord(
            id=record_id or new_provisional_id(now),
            entity_type=entity_type,
            payload=dict(payload),
            created_at=now,
            sequence=sequence,
        )
        self._store.put(self._key(entity_type, record.id), record.to_wire_json())
        _logger.debug("Queued %s record %s", entity_type, record.id)
        return record

    def list_unsynced(self, entity_type: str) -> list[PendingRecord]:
        """Unsynced records, oldest first."""
        return [record for record in self._records(entity_type) if not record.synced]

    def get(self, entity_type: str, record_id: str) -> PendingRecord | None:
        return self._load(self._key(entity_type, record_id))

    def find(self, record_id: str) -> PendingRecord | None:
        """Look a record up by id across all entity types."""
        for entity_type in self.entity_types():
            record = self.get(entity_type, record_id)
            if record is not None:
                return record
        return None

    def mark_synced(self, entity_type: str, record_id: str, *, remote_id: str | None = None) -> bool:
        """Flag a record as synced. Idempotent: returns ``False`` when nothing changed."""
        key = self._key(entity_type, record_id)
        record = self._load(key)
        if record is None or record.synced:
            return False
        updated = record.model_copy(update={"synced": True, "synced_at": self._clock(), "remote_id": remote_id})
        self._store.put(key, updated.to_wire_json())
        return True

    def entity_types(self) -> list[str]:
        types: set[str] = set()
        for key in self._store.list_keys(QUEUE_PREFIX):
            entity_type, sep, _ = key[len(QUEUE_PREFIX) :].partition("/")
            if sep:
                types.add(entity_type)
        return sorted(types)

    def pending_count(self, entity_type: str | None = None) -> int:
        types = [entity_type] if entity_type is not None else self.entity_types()
        return sum(len(self.list_unsynced(t)) for t in types)

    def purge_synced(self, entity_type: str | None = None) -> int:
        """Drop synced records, keeping the queue bounded to its active window."""
        removed = 0
        types = [entity_type] if entity_type is not None else self.entity_types()
        for t in types:
            for record in self._records(t):
                if record.synced:
                    self._store.delete(self._key(t, record.id))
                    removed += 1
        return removed

    def clear(self) -> None:
        for key in self._store.list_keys(QUEUE_PREFIX):
            self._store.delete(key)
