"""Quiet-hours window check shared by every watchdog tick."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from loguru import logger

from ..config import QuietHoursConfig


def _zone(name: str) -> tzinfo:
    if name.upper() in {"UTC", "Z", "ETC/UTC"}:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown quiet-hours timezone {!r}; using UTC", name)
        return timezone.utc


def local_hour(now_ms: int, tz_name: str) -> int:
    return datetime.fromtimestamp(now_ms / 1000, tz=_zone(tz_name)).hour


def in_quiet_hours(config: QuietHoursConfig, now_ms: int) -> bool:
    """True when *now_ms* falls in ``[start_hour, end_hour)`` local time.

    The window may wrap midnight (23 → 8). ``start_hour == end_hour`` means
    no quiet hours.
    """
    if not config.enabled or config.start_hour == config.end_hour:
        return False
    hour = local_hour(now_ms, config.timezone)
    if config.start_hour < config.end_hour:
        return config.start_hour <= hour < config.end_hour
    return hour >= config.start_hour or hour < config.end_hour
