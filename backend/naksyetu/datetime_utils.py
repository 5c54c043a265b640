"""Central helpers for UTC timestamps.

Storage standard:
- Timestamps are stored as timezone-aware UTC datetimes (BSON dates).
- API responses render them as YYYY-MM-DDTHH:MM:SS.mmm+00:00 strings.
- Parsing accepts aware/naive datetimes (naive = UTC), dates and the common
  ISO8601 string variants clients send (with Z, without millis, date only).
"""
from __future__ import annotations
import datetime as _dt
from typing import Any, Iterable

_FALLBACK_PARSE_FORMATS: Iterable[str] = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d",
)


def now_utc() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def ensure_aware(value: _dt.datetime) -> _dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc)


def parse_iso(value: Any) -> _dt.datetime | None:
    """Parse supported input into an aware UTC datetime; None for falsy input.

    Raises ValueError for unsupported types or unparsable strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, _dt.datetime):
        return ensure_aware(value)
    if isinstance(value, _dt.date):
        return _dt.datetime(value.year, value.month, value.day, tzinfo=_dt.timezone.utc)
    if isinstance(value, str):
        s = value.strip()
        if s.endswith('Z'):
            s = s[:-1] + '+0000'
        elif len(s) > 6 and s[-6] in '+-' and s[-3] == ':':
            s = s[:-3] + s[-2:]
        for fmt in _FALLBACK_PARSE_FORMATS:
            try:
                return ensure_aware(_dt.datetime.strptime(s, fmt))
            except ValueError:
                continue
        raise ValueError(f"Unrecognized datetime string format: {value!r}")
    raise ValueError(f"Unsupported datetime value type: {type(value)}")


def to_iso(value: Any) -> str | None:
    """Render a datetime (or parsable value) as a millisecond ISO string."""
    dt = parse_iso(value)
    if dt is None:
        return None
    return f"{dt.strftime('%Y-%m-%dT%H:%M:%S')}.{dt.microsecond // 1000:03d}+00:00"


def now_iso() -> str:
    return to_iso(now_utc())  # type: ignore[return-value]


def start_of_day(value: _dt.datetime) -> _dt.datetime:
    return ensure_aware(value).replace(hour=0, minute=0, second=0, microsecond=0)


__all__ = ["now_utc", "now_iso", "to_iso", "parse_iso", "ensure_aware", "start_of_day"]
