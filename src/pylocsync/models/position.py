"""Position and wire message models."""

from __future__ import annotations

import json
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pylocsync.models._base import LocSyncBaseModel
from pylocsync.normalize import normalize_timestamp_ms, now_ms


def _reject_bool(value: Any) -> Any:
    # pydantic would coerce JSON true/false into 1.0/0.0.
    if isinstance(value, bool):
        raise ValueError("coordinate must be a number")
    return value


class Position(LocSyncBaseModel):
    """A single geographic fix.

    Parameters
    ----------
    latitude : float
        Latitude in degrees, ``-90..90``.
    longitude : float
        Longitude in degrees, ``-180..180``.
    timestamp : int
        Epoch milliseconds. Defaults to *now* when missing or invalid.
    accuracy : float or None
        Horizontal accuracy in meters, when the producer reports it.
    """

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    timestamp: int = Field(default_factory=now_ms)
    accuracy: float | None = Field(default=None, ge=0.0)

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> Any:
        return _reject_bool(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int:
        return normalize_timestamp_ms(value) or now_ms()

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


class LocationUpdateMessage(LocSyncBaseModel):
    """Position broadcast exchanged between peers.

    On the wire::

        {"userId": "ios_42", "latitude": -12.05, "longitude": -77.04, "timestamp": 1000}

    ``timestamp`` is optional on receipt; not every client sends it.
    """

    peer_id: str = Field(
        validation_alias=AliasChoices("userId", "peerId", "peer_id"),
        serialization_alias="userId",
    )
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    timestamp: int | None = None

    @field_validator("peer_id")
    @classmethod
    def _normalize_peer_id(cls, value: str) -> str:
        peer_id = value.strip()
        if not peer_id:
            raise ValueError("peer_id must be non-empty")
        return peer_id

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> Any:
        return _reject_bool(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int | None:
        return normalize_timestamp_ms(value)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> LocationUpdateMessage:
        """Parse a broker message body.

        Raises
        ------
        ValueError
            The body is not JSON, not an object, or fails validation
            (``pydantic.ValidationError`` is a ``ValueError``).
        """
        return cls.model_validate_json(raw)

    @classmethod
    def from_position(cls, peer_id: str, position: Position) -> LocationUpdateMessage:
        return cls(
            peer_id=peer_id,
            latitude=position.latitude,
            longitude=position.longitude,
            timestamp=position.timestamp,
        )

    def to_wire(self, *, include_timestamp: bool = True) -> str:
        exclude = None if include_timestamp and self.timestamp is not None else {"timestamp"}
        payload = self.model_dump(by_alias=True, exclude=exclude)
        return json.dumps(payload, separators=(",", ":"))

    def to_position(self, received_at: int | None = None) -> Position:
        """Registry value for this message.

        Falls back to *received_at* (or now) when the sender omitted the
        timestamp.
        """
        timestamp = self.timestamp if self.timestamp is not None else received_at
        return Position(latitude=self.latitude, longitude=self.longitude, timestamp=timestamp)
