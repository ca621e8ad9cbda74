"""Shared datetime utilities."""

from __future__ import annotations

import time
from datetime import datetime, timezone, tzinfo


def parse_rfc3339_ms(value: str | None) -> int | None:
    """Parse an RFC 3339 timestamp into epoch milliseconds.

    Naive timestamps are read as UTC. Fractional seconds beyond microseconds
    (rollout logs carry nanoseconds) are truncated.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    head, sep, rest = text.partition(".")
    if sep:
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}" if digits else head + rest
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def local_day_key(ts_ms: int, tz: tzinfo | None = None) -> str:
    """Return the calendar day (YYYY-MM-DD) of a timestamp in local time."""
    moment = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return moment.astimezone(tz).strftime("%Y-%m-%d")
