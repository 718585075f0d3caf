from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    if value is None:
        return None
    s = value.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    """Processor timestamps are unix seconds; convert to UTC-naive."""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)


def as_of_timestamp(as_of: date) -> datetime:
    """
    Timestamp recorded for a run performed "as of" a business date.

    Today's runs get the real clock; backfills get midnight of the date so
    billing-month comparisons stay anchored to the business date.
    """
    now = utcnow()
    if as_of == now.date():
        return now
    return datetime.combine(as_of, time.min)


def billing_period(value: date | datetime) -> str:
    """YYYY-MM billing month key."""
    return f"{value.year:04d}-{value.month:02d}"


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes (e.g. from timestamptz columns) converted to UTC-naive."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
