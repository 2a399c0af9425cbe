from __future__ import annotations

import os
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def configured_timezone_name() -> str:
    return (os.getenv("KEYCARD_TIMEZONE") or "UTC").strip()


def configured_timezone() -> tzinfo:
    try:
        return ZoneInfo(configured_timezone_name())
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def now_local() -> datetime:
    return datetime.now(configured_timezone())


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with a trailing Z, the format written on cards."""
    return now_utc().isoformat(timespec="milliseconds").replace("+00:00", "Z")
