"""pylocsync - Async Python client for broker-relayed peer location sharing."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pylocsync")
except PackageNotFoundError:
    __version__ = "0+local"
from pylocsync.channel import SyncChannel
from pylocsync.client import LocSyncClient
from pylocsync.config import SyncConfig
from pylocsync.exceptions import (
    LocSyncConfigError,
    LocSyncError,
    LocSyncPermissionError,
    LocSyncProtocolError,
    LocSyncTransportError,
)
from pylocsync.identity import IdentityProvider
from pylocsync.models import ConnectionState, LocationUpdateMessage, Position
from pylocsync.positions import PositionSource, ReplayPositionSource, SampleThrottle
from pylocsync.state.registry import PeerRegistry

__all__ = [
    "__version__",
    "ConnectionState",
    "IdentityProvider",
    "LocSyncClient",
    "LocSyncConfigError",
    "LocSyncError",
    "LocSyncPermissionError",
    "LocSyncProtocolError",
    "LocSyncTransportError",
    "LocationUpdateMessage",
    "PeerRegistry",
    "Position",
    "PositionSource",
    "ReplayPositionSource",
    "SampleThrottle",
    "SyncChannel",
    "SyncConfig",
]
