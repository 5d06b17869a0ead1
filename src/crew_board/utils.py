"""Provide utility helpers for epoch-millisecond timestamps."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from .constants import MINUTE_MS


def _now_ms() -> int:
    return int(time.time() * 1000)


def _minutes_between(earlier_ms: Optional[int], later_ms: int) -> Optional[int]:
    if not earlier_ms:
        return None
    return max(0, (later_ms - int(earlier_ms)) // MINUTE_MS)


def _ms_to_iso(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).isoformat()


def _coerce_ms(value: Any) -> Optional[int]:
    """Accept epoch ms (int/float/str digits) or an ISO string; return epoch ms."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    # If a naive timestamp slips in, assume UTC to avoid crashes.
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)
