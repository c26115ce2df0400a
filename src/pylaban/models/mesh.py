"""Mesh relay data: locations, envelopes, presence and shared records."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pylaban._constants import MESH_PROTOCOL
from pylaban.models._base import LabanBaseModel


class Location(LabanBaseModel):
    latitude: float = Field(validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(validation_alias=AliasChoices("longitude", "lng", "lon"))

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, value: float) -> float:
        if not -90.0 <= value <= 90.0:
            raise ValueError(f"latitude out of range: {value}")
        return value

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, value: float) -> float:
        if not -180.0 <= value <= 180.0:
            raise ValueError(f"longitude out of range: {value}")
        return value


class EnvelopeKind(StrEnum):
    PRESENCE = "presence"
    DATA_REQUEST = "data_request"
    DATA_PUSH = "data_push"


class RelayEnvelope(LabanBaseModel):
    """Typed, time-boxed message placed in the shared medium.

    ``sent_at`` is only used to compute expiry. A ``None`` ``to_device``
    addresses every device.
    """

    protocol: str = MESH_PROTOCOL
    kind: EnvelopeKind
    from_device: str
    to_device: str | None = None
    sent_at: float
    ttl: float
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("protocol")
    @classmethod
    def _known_protocol(cls, value: str) -> str:
        if value != MESH_PROTOCOL:
            raise ValueError(f"foreign protocol {value!r}")
        return value

    @field_validator("from_device")
    @classmethod
    def _non_empty_device(cls, value: str) -> str:
        device = value.strip()
        if not device:
            raise ValueError("from_device must be non-empty")
        return device

    @property
    def expires_at(self) -> float:
        return self.sent_at + self.ttl

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    @property
    def is_broadcast(self) -> bool:
        return self.to_device is None


class Presence(LabanBaseModel):
    """Payload of a presence envelope."""

    device_id: str
    location: Location
    broadcast_at: float
    range_m: float = Field(validation_alias=AliasChoices("rangeM", "range_m", "range"))


class SharedRecord(LabanBaseModel):
    """Emergency record as exchanged between devices.

    Only these fields leave the device; anything else in a locally stored
    request is dropped at the relay boundary.
    """

    id: str
    user_name: str | None = None
    message: str | None = None
    role: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    region: str | None = None
    status: str | None = None
    image_url: str | None = None
    access_vehicles: Any = None
    created_at: str | None = Field(
        default=None,
        validation_alias=AliasChoices("createdAt", "created_at", "timestamp"),
    )
    device_id: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("record id must be non-empty")
        return str(value)

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, value: Any) -> str | None:
        return None if value is None else str(value)

    @property
    def location(self) -> Location | None:
        if self.latitude is None or self.longitude is None:
            return None
        try:
            return Location(latitude=self.latitude, longitude=self.longitude)
        except ValueError:
            return None


class MeshPeer(LabanBaseModel):
    """A device currently in range. Recomputed on every discovery cycle."""

    device_id: str
    last_seen_at: float
    distance_m: float
    location: Location
