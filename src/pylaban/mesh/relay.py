"""Local mesh relay over a shared key/value medium.

Co-located devices exchange emergency records without a network stack:
every device periodically announces its presence, discovers peers in range,
asks them for their records, and answers requests addressed to it. All
traffic goes through the injected medium and every entry carries its own
expiry, so no locking is needed; duplicate delivery is tolerated and
filtered by record id.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from pylaban._constants import MESH_PREFIX
from pylaban._scheduler import Scheduler
from pylaban.config import MeshProfile
from pylaban.exceptions import MeshEnvelopeParseError, PersistenceError
from pylaban.geo import distance_m
from pylaban.mesh.envelope import decode_envelope, encode_envelope, key_for, presence_key, push_key, validate_device_id
from pylaban.models.mesh import EnvelopeKind, Location, MeshPeer, Presence, RelayEnvelope, SharedRecord
from pylaban.storage import KeyValueStore

_logger = logging.getLogger(__name__)

RecordListener = Callable[[list[SharedRecord]], None]

_PRESENCE = "mesh-presence"
_DISCOVERY = "mesh-discovery"
_POLL = "mesh-poll"
_ACTIVITIES = (_PRESENCE, _DISCOVERY, _POLL)


class RelayState(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"


def generate_device_id() -> str:
    return f"device_{secrets.token_hex(5)[:9]}"


def _as_location(value: Location | Mapping[str, Any]) -> Location:
    if isinstance(value, Location):
        return value
    return Location.model_validate(value)


class LocalMeshRelay:
    """One relay per device process, constructed explicitly and passed to consumers.

    Usage::

        relay = LocalMeshRelay(medium, profile=config.mesh)
        relay.add_listener(lambda records: print(len(records), "nearby"))
        relay.start({"latitude": 14.5995, "longitude": 120.9842})
        relay.store_local_request({"id": "r1", "message": "flood", "latitude": 14.6, "longitude": 120.98})
        ...
        relay.stop()
    """

    def __init__(
        self,
        medium: KeyValueStore,
        *,
        device_id: str | None = None,
        profile: MeshProfile | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._medium = medium
        self._device_id = validate_device_id(device_id) if device_id else generate_device_id()
        self._profile = profile or MeshProfile()
        self._scheduler = scheduler or Scheduler()
        self._clock = clock
        self._state = RelayState.STOPPED
        self._location: Location | None = None
        self._peers: dict[str, MeshPeer] = {}
        self._local: OrderedDict[str, SharedRecord] = OrderedDict()
        self._received: OrderedDict[str, SharedRecord] = OrderedDict()
        self._listeners: list[RecordListener] = []
        self._reported_bad_keys: set[str] = set()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == RelayState.RUNNING

    @property
    def location(self) -> Location | None:
        return self._location

    @property
    def peers(self) -> list[MeshPeer]:
        """Peers found by the latest discovery cycle."""
        return list(self._peers.values())

    def local_records(self) -> list[SharedRecord]:
        return list(self._local.values())

    def received_records(self) -> list[SharedRecord]:
        return list(self._received.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, location: Location | Mapping[str, Any]) -> None:
        """Stopped → Running. A second call only updates the location."""
        self._location = _as_location(location)
        if self.is_running:
            return
        p = self._profile
        self._state = RelayState.RUNNING
        try:
            self._scheduler.every(_PRESENCE, p.presence_interval, self.broadcast_presence)
            self._scheduler.every(_DISCOVERY, p.discovery_interval, self.discover_peers)
            self._scheduler.every(_POLL, p.poll_interval, self.poll_incoming)
        except RuntimeError:
            # No running event loop: leave the relay cleanly stopped so start() can be retried.
            self._state = RelayState.STOPPED
            self._cancel_activities()
            raise
        _logger.info("Starting mesh relay for device %s", self._device_id)
        self.broadcast_presence()

    def stop(self) -> None:
        """Running → Stopped. Cancels all three activities; a second call is a no-op."""
        if not self.is_running:
            return
        self._state = RelayState.STOPPED
        self._cancel_activities()
        self._peers.clear()
        for key in (presence_key(self._device_id), push_key(self._device_id)):
            try:
                self._medium.delete(key)
            except PersistenceError:
                _logger.debug("Could not withdraw %s", key, exc_info=True)
        _logger.info("Stopped mesh relay for device %s", self._device_id)

    def _cancel_activities(self) -> None:
        for name in _ACTIVITIES:
            self._scheduler.cancel(name)

    def update_location(self, location: Location | Mapping[str, Any]) -> None:
        self._location = _as_location(location)

    # ------------------------------------------------------------------
    # Listeners and local records
    # ------------------------------------------------------------------

    def add_listener(self, listener: RecordListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: RecordListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def store_local_request(self, request: SharedRecord | Mapping[str, Any]) -> SharedRecord:
        """Keep a record for sharing and push it to nearby devices right away when running."""
        now = self._clock()
        if isinstance(request, SharedRecord):
            data: dict[str, Any] = request.to_wire()
        else:
            data = dict(request)
        for key in ("deviceId", "device_id"):
            data.pop(key, None)
        data["device_id"] = self._device_id
        if data.get("id") in (None, ""):
            data["id"] = str(int(now * 1000))
        if not any(data.get(key) for key in ("createdAt", "created_at", "timestamp")):
            data["created_at"] = datetime.fromtimestamp(now, tz=UTC).isoformat()

        record = SharedRecord.model_validate(data)
        self._local[record.id] = record
        self._local.move_to_end(record.id)
        while len(self._local) > self._profile.max_local_records:
            self._local.popitem(last=False)

        if self.is_running:
            self._publish_push(now)
        return record

    # ------------------------------------------------------------------
    # Periodic activities
    # ------------------------------------------------------------------

    def broadcast_presence(self) -> RelayEnvelope | None:
        """Announce this device; the entry self-expires after the presence TTL."""
        if not self.is_running or self._location is None:
            return None
        now = self._clock()
        presence = Presence(
            device_id=self._device_id,
            location=self._location,
            broadcast_at=now,
            range_m=self._profile.range_m,
        )
        envelope = RelayEnvelope(
            kind=EnvelopeKind.PRESENCE,
            from_device=self._device_id,
            sent_at=now,
            ttl=self._profile.presence_ttl,
            payload=presence.to_wire(),
        )
        return envelope if self._publish(envelope) else None

    def discover_peers(self) -> list[MeshPeer]:
        """Rebuild the peer set from live presences in range and ask each peer for its records."""
        if not self.is_running or self._location is None:
            return []
        now = self._clock()
        here = self._location
        found: dict[str, MeshPeer] = {}
        for key, envelope in self._scan(now):
            if envelope.kind != EnvelopeKind.PRESENCE or envelope.from_device == self._device_id:
                continue
            try:
                presence = Presence.model_validate(envelope.payload)
            except ValidationError:
                self._report_bad_entry(key, "invalid presence payload")
                continue
            distance = distance_m(
                here.latitude,
                here.longitude,
                presence.location.latitude,
                presence.location.longitude,
            )
            if distance <= self._profile.range_m:
                found[envelope.from_device] = MeshPeer(
                    device_id=envelope.from_device,
                    last_seen_at=envelope.sent_at,
                    distance_m=round(distance, 1),
                    location=presence.location,
                )

        self._peers = found
        if found:
            _logger.debug("Discovered %d nearby device(s): %s", len(found), sorted(found))
        for peer_id in found:
            self._publish(
                RelayEnvelope(
                    kind=EnvelopeKind.DATA_REQUEST,
                    from_device=self._device_id,
                    to_device=peer_id,
                    sent_at=now,
                    ttl=self._profile.request_ttl,
                )
            )
        return list(found.values())

    def poll_incoming(self) -> list[SharedRecord]:
        """Answer requests addressed to this device and collect nearby records pushed by others.

        Returns the net-new records delivered to listeners.
        """
        if not self.is_running:
            return []
        now = self._clock()
        entries = list(self._scan(now))

        answered = 0
        for key, envelope in entries:
            if envelope.kind == EnvelopeKind.DATA_REQUEST and envelope.to_device == self._device_id:
                answered += 1
                self._delete(key)
        if answered and self._local:
            self._publish_push(now)

        fresh: dict[str, SharedRecord] = {}
        for key, envelope in entries:
            if envelope.kind != EnvelopeKind.DATA_PUSH or envelope.from_device == self._device_id:
                continue
            for record in self._records_in(key, envelope):
                if record.id in fresh or self._holds(record.id):
                    continue
                if self._is_nearby(record):
                    fresh[record.id] = record

        if not fresh or not self.is_running:
            return []
        delivered = list(fresh.values())
        self._received.update(fresh)
        while len(self._received) > self._profile.max_received_records:
            self._received.popitem(last=False)
        _logger.info("Received %d nearby record(s) over the mesh", len(delivered))
        self._notify(delivered)
        return delivered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _holds(self, record_id: str) -> bool:
        return record_id in self._local or record_id in self._received

    def _is_nearby(self, record: SharedRecord) -> bool:
        here = self._location
        there = record.location
        if here is None or there is None:
            return False
        distance = distance_m(here.latitude, here.longitude, there.latitude, there.longitude)
        return distance <= self._profile.nearby_radius_m

    def _records_in(self, key: str, envelope: RelayEnvelope) -> Iterator[SharedRecord]:
        raw_records = envelope.payload.get("records")
        if not isinstance(raw_records, list):
            self._report_bad_entry(key, "push without a records list")
            return
        for raw in raw_records:
            try:
                yield SharedRecord.model_validate(raw)
            except ValidationError:
                _logger.debug("Skipping invalid record in %s", key, exc_info=True)

    def _publish_push(self, now: float) -> None:
        self._publish(
            RelayEnvelope(
                kind=EnvelopeKind.DATA_PUSH,
                from_device=self._device_id,
                sent_at=now,
                ttl=self._profile.push_ttl,
                payload={"records": [record.to_wire() for record in self._local.values()]},
            )
        )

    def _publish(self, envelope: RelayEnvelope) -> bool:
        key = key_for(envelope)
        try:
            self._medium.put(key, encode_envelope(envelope))
        except PersistenceError:
            _logger.warning("Failed to publish %s", key, exc_info=True)
            return False
        return True

    def _delete(self, key: str) -> None:
        try:
            self._medium.delete(key)
        except PersistenceError:
            _logger.debug("Failed to delete %s", key, exc_info=True)

    def _scan(self, now: float) -> Iterator[tuple[str, RelayEnvelope]]:
        """Yield live envelopes, skipping malformed entries and removing expired ones."""
        try:
            keys = self._medium.list_keys(MESH_PREFIX)
        except PersistenceError:
            _logger.warning("Failed to list the mesh medium", exc_info=True)
            return
        for key in keys:
            try:
                raw = self._medium.get(key)
            except PersistenceError:
                _logger.debug("Failed to read %s", key, exc_info=True)
                continue
            if raw is None:
                continue
            try:
                envelope = decode_envelope(key, raw)
            except MeshEnvelopeParseError as exc:
                self._report_bad_entry(key, str(exc))
                continue
            if envelope.is_expired(now):
                self._remove_if_unchanged(key, raw)
                continue
            yield key, envelope

    def _remove_if_unchanged(self, key: str, raw: str) -> None:
        # Narrow the window in which a fresh rewrite by the owner gets deleted.
        try:
            if self._medium.get(key) == raw:
                self._medium.delete(key)
        except PersistenceError:
            _logger.debug("Failed to remove expired %s", key, exc_info=True)

    def _report_bad_entry(self, key: str, reason: str) -> None:
        if key in self._reported_bad_keys:
            _logger.debug("Skipping malformed mesh entry %s: %s", key, reason)
            return
        self._reported_bad_keys.add(key)
        _logger.warning("Skipping malformed mesh entry %s: %s", key, reason)

    def _notify(self, records: list[SharedRecord]) -> None:
        for listener in list(self._listeners):
            try:
                listener(list(records))
            except Exception:
                _logger.warning("Mesh listener failed", exc_info=True)
