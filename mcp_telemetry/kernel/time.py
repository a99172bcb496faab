from __future__ import annotations

import time
from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Wall-clock unix time in milliseconds."""
    return int(time.time() * 1000)


def from_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)


def isoformat_z(value: datetime) -> str:
    """RFC3339-ish UTC string with a `Z` suffix and millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def hour_bucket(ms: int | float) -> datetime:
    """Truncate a millisecond timestamp to the start of its UTC hour."""
    return from_ms(ms).replace(minute=0, second=0, microsecond=0)
