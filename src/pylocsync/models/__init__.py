"""Data models for peer location sync."""

from pylocsync.models._base import LocSyncBaseModel
from pylocsync.models.connection import ConnectionState
from pylocsync.models.position import LocationUpdateMessage, Position

__all__ = [
    "ConnectionState",
    "LocSyncBaseModel",
    "LocationUpdateMessage",
    "Position",
]
