"""
Time helpers.

All timestamps are stored as naive UTC datetimes so that SQLite (which drops
tzinfo) and server databases compare them the same way.
"""
from datetime import datetime, UTC
from typing import Optional, Union

from dateutil import parser as date_parser


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None, microsecond=0)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Accepts ISO strings (with or without offset) and datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return to_naive_utc(date_parser.isoparse(value))


def resolve_now(now: Optional[datetime]) -> datetime:
    return utc_now() if now is None else to_naive_utc(now)
