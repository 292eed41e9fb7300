from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    """Millisecond-precision UTC timestamp, e.g. 2025-01-31T12:04:05.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc_iso(ts: str) -> Optional[datetime]:
    s = (ts or "").strip()
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[: -len("Z")] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except ValueError:
        return None


def compact_timestamp(ts: str) -> str:
    """Filename key: drop ':' and '.', keep the first 15 characters."""
    return str(ts or "").replace(":", "").replace(".", "")[:15]


def clock_hms(ts: str) -> str:
    dt = parse_utc_iso(ts)
    if dt is None:
        return "--:--:--"
    return dt.strftime("%H:%M:%S")
