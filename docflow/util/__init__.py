from .ids import new_id
from .pagination import clamp_limit, clamp_offset
from .time import utc_now, to_naive_utc, parse_timestamp, resolve_now

__all__ = [
    "new_id",
    "clamp_limit", "clamp_offset",
    "utc_now", "to_naive_utc", "parse_timestamp", "resolve_now",
]
