from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

EPOCH_ISO = "1970-01-01T00:00:00.000Z"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc_z(dt: datetime) -> str:
    """
    Serialize to ISO-8601 UTC with millisecond precision and a trailing 'Z'.
    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_utc_z(utcnow())


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string into an aware UTC datetime.

    - None / "" / garbage -> None
    - naive values are interpreted as UTC
    - "...Z" and "+HH:MM" offsets are converted to UTC
    - "YYYY-MM-DD HH:MM:SS" (SQLite CURRENT_TIMESTAMP) is accepted
    - any number of fractional digits (PostgREST trims trailing zeros)
    """
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    s = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", s, count=1)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def timestamp_or_epoch(value: Optional[str]) -> datetime:
    parsed = parse_iso_datetime(value)
    return parsed if parsed is not None else _EPOCH
