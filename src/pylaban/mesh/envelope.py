"""Relay envelope keys and codec for the shared medium.

Layout::

    mesh/<device_id>/presence
    mesh/<device_id>/request/<to_device>
    mesh/<device_id>/push

Values are JSON-encoded :class:`~pylaban.models.mesh.RelayEnvelope` objects.
"""

from __future__ import annotations

from pydantic import ValidationError

from pylaban._constants import MESH_PREFIX
from pylaban.exceptions import MeshEnvelopeParseError
from pylaban.models.mesh import EnvelopeKind, RelayEnvelope

_KIND_SEGMENTS: dict[EnvelopeKind, str] = {
    EnvelopeKind.PRESENCE: "presence",
    EnvelopeKind.DATA_REQUEST: "request",
    EnvelopeKind.DATA_PUSH: "push",
}
_SEGMENT_KINDS = {segment: kind for kind, segment in _KIND_SEGMENTS.items()}


def validate_device_id(device_id: str) -> str:
    value = device_id.strip()
    if not value or "/" in value:
        raise ValueError(f"invalid device id {device_id!r}")
    return value


def presence_key(device_id: str) -> str:
    return f"{MESH_PREFIX}{device_id}/presence"


def request_key(from_device: str, to_device: str) -> str:
    return f"{MESH_PREFIX}{from_device}/request/{to_device}"


def push_key(device_id: str) -> str:
    return f"{MESH_PREFIX}{device_id}/push"


def key_for(envelope: RelayEnvelope) -> str:
    if envelope.kind == EnvelopeKind.DATA_REQUEST:
        if envelope.to_device is None:
            raise ValueError("data requests must be addressed to a device")
        return request_key(envelope.from_device, envelope.to_device)
    if envelope.kind == EnvelopeKind.DATA_PUSH:
        return push_key(envelope.from_device)
    return presence_key(envelope.from_device)


def parse_key(key: str) -> tuple[str, EnvelopeKind, str | None]:
    """Split a medium key into ``(from_device, kind, to_device)``."""
    if not key.startswith(MESH_PREFIX):
        raise MeshEnvelopeParseError(f"not a mesh key: {key!r}", key=key)
    parts = key[len(MESH_PREFIX) :].split("/")
    if len(parts) == 2 and parts[1] in ("presence", "push"):
        return parts[0], _SEGMENT_KINDS[parts[1]], None
    if len(parts) == 3 and parts[1] == "request" and parts[2]:
        return parts[0], EnvelopeKind.DATA_REQUEST, parts[2]
    raise MeshEnvelopeParseError(f"unrecognised mesh key layout: {key!r}", key=key)


def encode_envelope(envelope: RelayEnvelope) -> str:
    return envelope.to_wire_json()


def decode_envelope(key: str, raw: str) -> RelayEnvelope:
    """Decode and cross-check an entry against its key.

    Raises :class:`MeshEnvelopeParseError` for malformed JSON, foreign
    protocols, or an envelope whose author/kind/recipient disagrees with
    the key it was found under.
    """
    from_device, kind, to_device = parse_key(key)
    try:
        envelope = RelayEnvelope.model_validate_json(raw)
    except ValidationError as exc:
        raise MeshEnvelopeParseError(f"malformed envelope at {key!r}: {exc.error_count()} error(s)", key=key) from exc
    if envelope.from_device != from_device or envelope.kind != kind or envelope.to_device != to_device:
        raise MeshEnvelopeParseError(f"envelope does not match its key {key!r}", key=key)
    return envelope
