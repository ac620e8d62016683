"""Client configuration for pylocsync."""

from __future__ import annotations

import dataclasses
import math
import os
from typing import Any

from pylocsync._constants import (
    BROKER_URL,
    INBOUND_TOPIC,
    OUTBOUND_DESTINATION,
    TRANSPORT_STOMP,
    TRANSPORTS,
)
from pylocsync.exceptions import LocSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_float(name: str, value: str) -> float:
    try:
        return float(value)
    except ValueError as exc:
        raise LocSyncConfigError(f"{name} must be a number, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Client configuration.

    Parameters
    ----------
    broker_url : str
        Broker address. ``ws://`` / ``wss://`` for STOMP over websocket
        (the raw websocket endpoint of a SockJS broker, e.g.
        ``ws://host:8080/ws/websocket``), ``mqtt://host:port`` for MQTT.
    transport : str
        ``"stomp"`` or ``"mqtt"``.
    outbound_destination : str
        Destination local position updates are sent to. A plain MQTT
        broker does not relay ``/app/*`` destinations, so MQTT setups
        usually point this at ``inbound_topic``.
    inbound_topic : str
        Broadcast topic every peer subscribes to.
    peer_id : str or None
        Explicit peer id. When unset the identity provider derives one.
    reconnect_delay : float
        Seconds to wait between a connection loss and the next attempt.
        Retries are unbounded.
    heartbeat_outgoing : float
        Seconds between heart-beats sent to the broker. ``0`` disables.
    heartbeat_incoming : float
        Seconds between heart-beats expected from the broker. ``0``
        disables liveness monitoring.
    heartbeat_tolerance : float
        Multiplier applied to the negotiated incoming interval before a
        silent connection is declared dead.
    connect_timeout : float
        Seconds allowed for the transport handshake.
    include_timestamp : bool
        Whether outbound updates carry ``timestamp``.
    min_distance_m : float
        Movement (meters) that makes a new sample publish-worthy.
    min_interval : float
        Seconds after which a sample is publish-worthy even without
        movement.
    frame_trace_enabled : bool
        Log every broker frame at DEBUG level.
    """

    broker_url: str = BROKER_URL
    transport: str = TRANSPORT_STOMP
    outbound_destination: str = OUTBOUND_DESTINATION
    inbound_topic: str = INBOUND_TOPIC
    peer_id: str | None = None
    reconnect_delay: float = 5.0
    heartbeat_outgoing: float = 4.0
    heartbeat_incoming: float = 4.0
    heartbeat_tolerance: float = 2.0
    connect_timeout: float = 10.0
    include_timestamp: bool = True
    min_distance_m: float = 5.0
    min_interval: float = 3.0
    frame_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if not self.broker_url.strip():
            raise LocSyncConfigError("broker_url must be non-empty")
        if self.transport not in TRANSPORTS:
            raise LocSyncConfigError(f"transport must be one of {sorted(TRANSPORTS)}, got {self.transport!r}")
        if not self.outbound_destination or not self.inbound_topic:
            raise LocSyncConfigError("outbound_destination and inbound_topic must be non-empty")
        if self.peer_id is not None and not self.peer_id.strip():
            raise LocSyncConfigError("peer_id must be non-empty when set")
        for name in (
            "reconnect_delay",
            "heartbeat_outgoing",
            "heartbeat_incoming",
            "min_distance_m",
            "min_interval",
        ):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise LocSyncConfigError(f"{name} must be a finite number >= 0, got {value}")
        if not math.isfinite(self.connect_timeout) or self.connect_timeout <= 0:
            raise LocSyncConfigError(f"connect_timeout must be > 0, got {self.connect_timeout}")
        if not math.isfinite(self.heartbeat_tolerance) or self.heartbeat_tolerance < 1:
            raise LocSyncConfigError(f"heartbeat_tolerance must be >= 1, got {self.heartbeat_tolerance}")

    @property
    def heartbeat_outgoing_ms(self) -> int:
        return int(round(self.heartbeat_outgoing * 1000))

    @property
    def heartbeat_incoming_ms(self) -> int:
        return int(round(self.heartbeat_incoming * 1000))

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from ``LOCSYNC_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "LOCSYNC_BROKER_URL": "broker_url",
            "LOCSYNC_TRANSPORT": "transport",
            "LOCSYNC_OUTBOUND_DESTINATION": "outbound_destination",
            "LOCSYNC_INBOUND_TOPIC": "inbound_topic",
            "LOCSYNC_PEER_ID": "peer_id",
        }
        _ENV_FLOAT_MAP = {
            "LOCSYNC_RECONNECT_DELAY": "reconnect_delay",
            "LOCSYNC_HEARTBEAT_OUTGOING": "heartbeat_outgoing",
            "LOCSYNC_HEARTBEAT_INCOMING": "heartbeat_incoming",
            "LOCSYNC_HEARTBEAT_TOLERANCE": "heartbeat_tolerance",
            "LOCSYNC_CONNECT_TIMEOUT": "connect_timeout",
            "LOCSYNC_MIN_DISTANCE_M": "min_distance_m",
            "LOCSYNC_MIN_INTERVAL": "min_interval",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            # Exported but empty counts as unset.
            if val is not None and val.strip():
                config_kwargs[field_name] = val.strip()
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = _env_float(env_key, val)

        if "include_timestamp" not in overrides:
            config_kwargs["include_timestamp"] = _env_bool(env.get("LOCSYNC_INCLUDE_TIMESTAMP"), True)

        if "frame_trace_enabled" not in overrides:
            config_kwargs["frame_trace_enabled"] = _env_bool(env.get("LOCSYNC_FRAME_TRACE_ENABLED"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
