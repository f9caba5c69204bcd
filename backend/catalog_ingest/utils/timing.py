"""Timestamp normalization and human-readable durations."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Any) -> datetime | None:
    """Accept a datetime or the ``str(datetime)`` form cached progress uses."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


def seconds_between(start: Any, end: Any) -> float | None:
    started = parse_timestamp(start)
    finished = parse_timestamp(end)
    if started is None or finished is None:
        return None
    return max((finished - started).total_seconds(), 0.0)


def format_duration(seconds: float) -> str:
    """Format seconds as ``45s``, ``12m`` or ``2h 5m``."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 3600:
        return f"{round(seconds / 60)}m"
    hours = int(seconds // 3600)
    minutes = round((seconds % 3600) / 60)
    if minutes == 60:
        hours, minutes = hours + 1, 0
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"
