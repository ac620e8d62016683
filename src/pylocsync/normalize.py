"""Normalization helpers.

Centralizes defensive parsing of peer-supplied values.
"""

from __future__ import annotations

import math
import time
from typing import Any


def now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def normalize_timestamp_ms(value: Any) -> int | None:
    """Normalize a peer timestamp (epoch milliseconds).

    - Empty/missing/unparseable -> None
    - <= 0 -> None
    - Fractional milliseconds are truncated
    """

    ts = safe_int(value)
    if ts is None or ts <= 0:
        return None
    return ts
