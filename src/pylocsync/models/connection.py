"""Connection state of a sync channel."""

from __future__ import annotations

from enum import StrEnum


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"

    @property
    def is_active(self) -> bool:
        """Whether a session is running (connected or working towards it)."""
        return self is not ConnectionState.DISCONNECTED
