"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str], default: str = 'UTC') -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        ValueError: If the name is not a known timezone
    """
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f'Unknown timezone: {name}') from e


def localize(moment: datetime, tz: ZoneInfo) -> datetime:
    """Attach ``tz`` to a naive datetime, or convert an aware one into ``tz``."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=tz)
    return moment.astimezone(tz)


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string stored in a search document; None if absent."""
    if not value:
        return None
    return datetime.fromisoformat(value)
