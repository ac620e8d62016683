"""Local peer identity resolution.

The id is resolved once per provider and cached. Resolution order:

1. explicit ``peer_id`` from configuration
2. installation-scoped machine id, hashed so the raw value is never
   broadcast: ``<platform>_<12 hex>``
3. random fallback: ``<platform>_<8 hex>``, shared by every provider in
   the process

Failures of (2) degrade silently to (3).
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import logging
import platform
import secrets
from collections.abc import Awaitable, Callable
from pathlib import Path

from pylocsync._constants import MACHINE_ID_PATHS

_logger = logging.getLogger(__name__)

MachineIdReader = Callable[[], Awaitable[str | None]]


def platform_tag() -> str:
    """Short lowercase platform name (``linux``, ``darwin``, ``windows``)."""
    tag = platform.system().strip().lower()
    return tag or "unknown"


def _read_machine_id_files() -> str | None:
    for candidate in MACHINE_ID_PATHS:
        try:
            value = Path(candidate).read_text(encoding="ascii").strip()
        except (OSError, UnicodeDecodeError):
            continue
        if value:
            return value
    return None


async def read_machine_id() -> str | None:
    """Read the host machine id off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _read_machine_id_files)


def hashed_peer_id(tag: str, machine_id: str) -> str:
    digest = hashlib.md5(machine_id.encode("utf-8")).hexdigest()
    return f"{tag}_{digest[:12]}"


@functools.cache
def fallback_peer_id(tag: str) -> str:
    """Random id, drawn once per tag and kept for the process lifetime."""
    return f"{tag}_{secrets.token_hex(4)}"


class IdentityProvider:
    """Resolves and caches the local peer id."""

    def __init__(
        self,
        *,
        peer_id: str | None = None,
        reader: MachineIdReader | None = read_machine_id,
        tag: str | None = None,
    ) -> None:
        self._explicit = peer_id.strip() if peer_id else None
        self._reader = reader
        self._tag = tag or platform_tag()
        self._resolved: str | None = None
        self._lock = asyncio.Lock()

    @property
    def resolved(self) -> str | None:
        """The id once :meth:`resolve_id` has completed, else ``None``."""
        return self._resolved

    async def resolve_id(self) -> str:
        if self._resolved is not None:
            return self._resolved
        async with self._lock:
            if self._resolved is None:
                self._resolved = await self._resolve()
                _logger.debug("Resolved peer id=%s", self._resolved)
        return self._resolved

    async def _resolve(self) -> str:
        if self._explicit:
            return self._explicit
        if self._reader is not None:
            try:
                machine_id = await self._reader()
            except Exception:
                _logger.debug("Machine id lookup failed", exc_info=True)
                machine_id = None
            if machine_id and machine_id.strip():
                return hashed_peer_id(self._tag, machine_id.strip())
        return fallback_peer_id(self._tag)
