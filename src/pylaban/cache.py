"""Expiring key/value cache for offline reads.

Expiry is lazy: ``get`` never returns an expired payload whether or not
``prune`` has run.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from pylaban._constants import CACHE_PREFIX
from pylaban.models.records import CacheEntry
from pylaban.storage import KeyValueStore

_logger = logging.getLogger(__name__)


class TTLCache:
    """TTL cache persisted in a :class:`~pylaban.storage.KeyValueStore`.

    TTLs are in seconds. A TTL of ``0`` stores an entry that is already
    invisible.
    """

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def _store_key(key: str) -> str:
        return CACHE_PREFIX + key

    def put(self, key: str, payload: Any, ttl: float) -> CacheEntry:
        """Insert or replace *key*, expiring ``ttl`` seconds from now."""
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        now = self._clock()
        entry = CacheEntry(key=key, payload=payload, stored_at=now, expires_at=now + ttl)
        self._store.put(self._store_key(key), entry.to_wire_json())
        return entry

    def lookup(self, key: str) -> CacheEntry | None:
        """Return the live entry for *key*, or ``None`` when missing or expired."""
        raw = self._store.get(self._store_key(key))
        if raw is None:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            _logger.warning("Discarding unreadable cache entry %s", key, exc_info=True)
            return None
        if entry.is_expired(self._clock()):
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached payload or *default* when missing or expired."""
        entry = self.lookup(key)
        if entry is None:
            return default
        return entry.payload

    def delete(self, key: str) -> None:
        self._store.delete(self._store_key(key))

    def prune(self) -> int:
        """Delete every entry whose expiry is at or before now. Returns the count removed."""
        now = self._clock()
        removed = 0
        for store_key in self._store.list_keys(CACHE_PREFIX):
            raw = self._store.get(store_key)
            if raw is None:
                continue
            try:
                expired = CacheEntry.model_validate_json(raw).is_expired(now)
            except ValidationError:
                expired = True
            if expired:
                self._store.delete(store_key)
                removed += 1
        if removed:
            _logger.debug("Pruned %d expired cache entries", removed)
        return removed

    def clear(self) -> None:
        for store_key in self._store.list_keys(CACHE_PREFIX):
            self._store.delete(store_key)

    def keys(self) -> list[str]:
        """Keys of live entries."""
        now = self._clock()
        live: list[str] = []
        for store_key in self._store.list_keys(CACHE_PREFIX):
            raw = self._store.get(store_key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.model_validate_json(raw)
            except ValidationError:
                continue
            if not entry.is_expired(now):
                live.append(entry.key)
        return live
