"""Local mesh relay: peer discovery and record exchange over a shared medium."""

from pylaban.mesh.envelope import (
    decode_envelope,
    encode_envelope,
    key_for,
    parse_key,
    presence_key,
    push_key,
    request_key,
)
from pylaban.mesh.relay import LocalMeshRelay, RecordListener, RelayState, generate_device_id

__all__ = [
    "LocalMeshRelay",
    "RecordListener",
    "RelayState",
    "decode_envelope",
    "encode_envelope",
    "generate_device_id",
    "key_for",
    "parse_key",
    "presence_key",
    "push_key",
    "request_key",
]
