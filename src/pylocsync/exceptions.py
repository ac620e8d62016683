"""Custom exception hierarchy for pylocsync."""

from __future__ import annotations


class LocSyncError(Exception):
    """Base exception for all pylocsync errors."""


class LocSyncConfigError(LocSyncError):
    """Invalid or missing configuration."""


class LocSyncTransportError(LocSyncError):
    """Broker connection failure (socket error, close, heart-beat timeout)."""

    def __init__(self, message: str, *, url: str = "") -> None:
        self.url = url
        super().__init__(message)


class LocSyncProtocolError(LocSyncTransportError):
    """Malformed broker frame or an ERROR frame sent by the broker.

    Handled exactly like any other transport error: the channel drops the
    connection and goes through the reconnection policy.
    """


class LocSyncPermissionError(LocSyncError):
    """Position sampling permission was not granted."""
