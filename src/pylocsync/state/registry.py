"""In-memory peer position registry.

Merge policy is last-write-wins per peer: the carried timestamp is not
consulted, a late-arriving older fix simply replaces the newer one.
"""

from __future__ import annotations

import logging

from pylocsync.models.position import Position

_logger = logging.getLogger(__name__)


class PeerRegistry:
    """Mapping of peer id to last-known :class:`Position`.

    All mutation happens on the event loop thread (transport threads
    marshal onto the loop first), so no locking is needed.
    """

    def __init__(self) -> None:
        self._peers: dict[str, Position] = {}

    def upsert(self, peer_id: str, position: Position) -> None:
        """Store *position* for *peer_id*, replacing any previous value."""
        self._peers[peer_id] = position
        _logger.debug("Registry upsert peer=%s lat=%s lon=%s", peer_id, position.latitude, position.longitude)

    def get(self, peer_id: str) -> Position | None:
        return self._peers.get(peer_id)

    def snapshot(self) -> dict[str, Position]:
        """Point-in-time copy, safe to hold while the registry keeps changing."""
        # Positions are frozen, so a shallow copy is enough.
        return dict(self._peers)

    def clear(self) -> None:
        if self._peers:
            _logger.debug("Registry cleared peers=%d", len(self._peers))
        self._peers.clear()

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers
