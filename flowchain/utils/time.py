"""UTC-only time helpers; every timestamp the engine stores is aware UTC"""
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC, convert aware ones"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_iso(dt: datetime) -> str:
    """``2024-05-01T12:00:00Z`` style, as sent to webhooks and API callers"""
    return ensure_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; raises ValueError when it is not one"""
    return ensure_utc(date_parser.isoparse(value))


def minutes_since(dt: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole minutes from ``dt`` to ``now`` (negative for the future, None without ``dt``)"""
    if dt is None:
        return None
    return int(((now or utc_now()) - ensure_utc(dt)).total_seconds() // 60)
