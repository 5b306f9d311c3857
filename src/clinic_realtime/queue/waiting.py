from __future__ import annotations

from datetime import datetime, timezone


def parse_ts(value: str | datetime | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp (or pass through a datetime).
    Naive values are treated as UTC. Returns None when unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        # Python < 3.11 does not accept a trailing "Z".
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def wait_minutes(arrival: str | datetime | None, now: datetime) -> int | None:
    a = parse_ts(arrival)
    if a is None:
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return int((now - a).total_seconds() // 60)


def format_wait(minutes: int) -> str:
    """
    "<m> min" below one hour, "<h>h" or "<h>h<m>" from one hour on.
    """
    m = max(0, int(minutes))
    if m < 60:
        return f"{m} min"
    hours, rem = divmod(m, 60)
    return f"{hours}h{rem}" if rem else f"{hours}h"
